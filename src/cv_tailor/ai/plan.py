"""Tailoring plan contract: JSON schema, decoding and shape validation."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any

from cv_tailor.errors import MalformedResponseError

PLAN_SCHEMA_NAME = "tailoring_plan"
PRIORITIES = ("high", "medium", "low")


@dataclass(slots=True)
class NextStep:
    """One actionable step of the plan."""

    task: str
    rationale: str
    priority: str
    estimated_minutes: int


@dataclass(slots=True)
class TailoringPlan:
    """Validated plan returned by the structured plan call."""

    summary: str
    strengths: list[str]
    gaps: list[str]
    next_steps: list[NextStep]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        """Canonical pretty-printed JSON stored as the plan artifact."""

        return json.dumps(self.to_dict(), ensure_ascii=False, indent=4)


def plan_json_schema() -> dict[str, Any]:
    """Strict JSON schema sent with plan requests."""

    non_empty_string = {"type": "string", "minLength": 1}
    string_list = {"type": "array", "minItems": 1, "items": non_empty_string}
    return {
        "type": "object",
        "additionalProperties": False,
        "required": ["summary", "strengths", "gaps", "next_steps"],
        "properties": {
            "summary": non_empty_string,
            "strengths": string_list,
            "gaps": string_list,
            "next_steps": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "additionalProperties": False,
                    "required": ["task", "rationale", "priority", "estimated_minutes"],
                    "properties": {
                        "task": non_empty_string,
                        "rationale": non_empty_string,
                        "priority": {"type": "string", "enum": list(PRIORITIES)},
                        "estimated_minutes": {"type": "integer", "minimum": 1},
                    },
                },
            },
        },
    }


def parse_plan(text: str) -> TailoringPlan:
    """Decode plan text and validate its shape.

    Raises:
        MalformedResponseError: the text is not JSON or does not match the schema.
    """

    try:
        raw = json.loads(text.strip())
    except json.JSONDecodeError as error:
        raise MalformedResponseError("Failed to decode JSON plan produced by the model.") from error
    if not isinstance(raw, dict):
        raise MalformedResponseError("Plan must be a JSON object.")

    summary = raw.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        raise MalformedResponseError("plan.summary must be a non-empty string")

    raw_steps = raw.get("next_steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise MalformedResponseError("plan.next_steps must be a non-empty array")

    return TailoringPlan(
        summary=summary,
        strengths=_string_list(raw.get("strengths"), field_name="strengths"),
        gaps=_string_list(raw.get("gaps"), field_name="gaps"),
        next_steps=[_next_step(item, index=index) for index, item in enumerate(raw_steps)],
    )


def _string_list(value: object, *, field_name: str) -> list[str]:
    if not isinstance(value, list) or not value:
        raise MalformedResponseError(f"plan.{field_name} must be a non-empty array")
    items: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            raise MalformedResponseError(
                f"plan.{field_name}[{index}] must be a non-empty string",
            )
        items.append(item)
    return items


def _next_step(value: object, *, index: int) -> NextStep:
    if not isinstance(value, dict):
        raise MalformedResponseError(f"plan.next_steps[{index}] must be an object")

    task = value.get("task")
    rationale = value.get("rationale")
    priority = value.get("priority")
    minutes = value.get("estimated_minutes")
    if not isinstance(task, str) or not task.strip():
        raise MalformedResponseError(f"plan.next_steps[{index}].task must be a non-empty string")
    if not isinstance(rationale, str) or not rationale.strip():
        raise MalformedResponseError(
            f"plan.next_steps[{index}].rationale must be a non-empty string",
        )
    if priority not in PRIORITIES:
        raise MalformedResponseError(
            f"plan.next_steps[{index}].priority must be one of {', '.join(PRIORITIES)}",
        )
    if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes < 1:
        raise MalformedResponseError(
            f"plan.next_steps[{index}].estimated_minutes must be a positive integer",
        )
    return NextStep(
        task=task,
        rationale=rationale,
        priority=str(priority),
        estimated_minutes=minutes,
    )
