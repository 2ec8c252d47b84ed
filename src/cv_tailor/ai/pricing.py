"""Token cost estimation from a per-model tariff table."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass


@dataclass(slots=True)
class ModelTariff:
    """Per-model prompt/completion pricing in minor currency units per 1K tokens."""

    prompt_per_1k: float
    completion_per_1k: float


def calculate_cost(
    *,
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    tariffs: dict[str, ModelTariff],
) -> int:
    """Cost in minor units, rounded half-up; unknown models cost nothing."""

    tariff = tariffs.get(model.strip().lower())
    if tariff is None:
        return 0
    raw = (prompt_tokens / 1000) * tariff.prompt_per_1k + (
        completion_tokens / 1000
    ) * tariff.completion_per_1k
    return int(math.floor(raw + 0.5))


def parse_tariffs(raw: str) -> dict[str, ModelTariff]:
    """Parse the `OPENAI_TARIFF_JSON` mapping.

    Format:
    - a JSON object keyed by model name (case-insensitive)
    - a numeric value applies to both prompt and completion tokens
    - an object value reads `prompt`/`input`/`default` for prompt tokens and
      `completion`/`output`/`default` for completion tokens, falling back to the
      prompt rate
    """

    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError("OPENAI_TARIFF_JSON is not valid JSON.") from error
    if not isinstance(data, dict):
        return {}

    parsed: dict[str, ModelTariff] = {}
    for model, tariff in data.items():
        key = str(model).strip().lower()
        if not key:
            continue
        if _is_number(tariff):
            value = float(tariff)
            parsed[key] = ModelTariff(prompt_per_1k=value, completion_per_1k=value)
            continue
        if not isinstance(tariff, dict):
            continue
        prompt = _first_number(tariff, ("prompt", "input", "default"))
        completion = _first_number(tariff, ("completion", "output", "default"))
        parsed[key] = ModelTariff(
            prompt_per_1k=prompt if prompt is not None else 0.0,
            completion_per_1k=completion if completion is not None else (prompt or 0.0),
        )
    return parsed


def _first_number(values: dict[str, object], keys: tuple[str, ...]) -> float | None:
    for key in keys:
        value = values.get(key)
        if _is_number(value):
            return float(value)  # type: ignore[arg-type]
    return None


def _is_number(value: object) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int | float):
        return True
    if isinstance(value, str):
        try:
            float(value)
        except ValueError:
            return False
        return True
    return False
