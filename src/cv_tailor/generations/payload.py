"""Schema for the `tailor_cv` job payload envelope."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from cv_tailor.errors import ConfigurationError

TAILOR_CV_JOB = "tailor_cv"
PREVIEW_CHARS = 200
DEFAULT_THINKING_TIME = 30


@dataclass(slots=True)
class TailorPayload:
    """Validated tailoring request carried by a queued job."""

    generation_id: int
    owner_id: int
    source: str
    target: str
    title: str = ""
    company: str = ""
    competencies: list[str] = field(default_factory=list)
    cv_sections: str = ""
    prompt: str = ""
    source_document_id: int | None = None
    target_document_id: int | None = None
    model: str | None = None
    thinking_time: int = DEFAULT_THINKING_TIME

    def competency_list(self) -> str:
        return ", ".join(self.competencies)

    def to_dict(self) -> dict[str, Any]:
        """Serializable envelope; optional fields are omitted when unset."""

        data: dict[str, Any] = {
            "generation_id": self.generation_id,
            "owner_id": self.owner_id,
            "source": self.source,
            "target": self.target,
            "thinking_time": self.thinking_time,
        }
        optional: dict[str, Any] = {
            "title": self.title,
            "company": self.company,
            "competencies": list(self.competencies),
            "cv_sections": self.cv_sections,
            "prompt": self.prompt,
            "source_document_id": self.source_document_id,
            "target_document_id": self.target_document_id,
            "model": self.model,
        }
        data.update({key: value for key, value in optional.items() if value not in (None, "", [])})
        return data


def parse_tailor_payload(raw: dict[str, Any]) -> TailorPayload:
    """Validate a job payload before any network call.

    Raises:
        ConfigurationError: a required field is missing, empty or mistyped.
    """

    if not isinstance(raw, dict):
        raise ConfigurationError("Job payload must be a JSON object.")

    return TailorPayload(
        generation_id=_required_int(raw, "generation_id"),
        owner_id=_required_int(raw, "owner_id"),
        source=_required_str(raw, "source"),
        target=_required_str(raw, "target"),
        title=_optional_str(raw, "title"),
        company=_optional_str(raw, "company"),
        competencies=_competencies(raw.get("competencies")),
        cv_sections=_optional_str(raw, "cv_sections"),
        prompt=_optional_str(raw, "prompt"),
        source_document_id=_optional_int(raw, "source_document_id"),
        target_document_id=_optional_int(raw, "target_document_id"),
        model=_optional_str(raw, "model") or None,
        thinking_time=_optional_int(raw, "thinking_time") or DEFAULT_THINKING_TIME,
    )


def summarize_payload(raw: dict[str, Any]) -> dict[str, Any]:
    """Redacted payload summary for audit records: ids, settings and short previews."""

    summary: dict[str, Any] = {}
    for key in ("source_document_id", "target_document_id", "thinking_time"):
        value = raw.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            summary[key] = value
    model = raw.get("model")
    if isinstance(model, str) and model.strip():
        summary["model"] = model.strip()
    for key in ("source", "target"):
        value = raw.get(key)
        if isinstance(value, str):
            summary[f"{key}_preview"] = value[:PREVIEW_CHARS]
            summary[f"{key}_chars"] = len(value)
    return summary


def _required_int(raw: dict[str, Any], key: str) -> int:
    if key not in raw or raw[key] is None:
        raise ConfigurationError(f"Missing required payload key: {key}")
    value = _coerce_int(raw[key], key=key)
    if value <= 0:
        raise ConfigurationError(f"Payload key {key} must be a positive integer.")
    return value


def _optional_int(raw: dict[str, Any], key: str) -> int | None:
    value = raw.get(key)
    if value is None or value == "":
        return None
    parsed = _coerce_int(value, key=key)
    if parsed <= 0:
        raise ConfigurationError(f"Payload key {key} must be a positive integer.")
    return parsed


def _coerce_int(value: object, *, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"Payload key {key} must be an integer.")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ConfigurationError(f"Payload key {key} must be an integer.")


def _required_str(raw: dict[str, Any], key: str) -> str:
    if key not in raw or raw[key] is None:
        raise ConfigurationError(f"Missing required payload key: {key}")
    value = raw[key]
    if not isinstance(value, str):
        raise ConfigurationError(f"Payload key {key} must be a string.")
    if not value.strip():
        raise ConfigurationError(f"Payload key {key} cannot be empty.")
    return value.strip()


def _optional_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigurationError(f"Payload key {key} must be a string.")
    return value.strip()


def _competencies(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    raise ConfigurationError("Payload key competencies must be a list of strings or a string.")
