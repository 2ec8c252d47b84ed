"""Domain models for the durable job queue."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

MAX_ERROR_CHARS = 1000


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    RESERVED = "reserved"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class JobView:
    """Readable job view for worker dispatch and CLI listing."""

    id: int
    type: str
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    status: JobStatus
    error: str | None
    worker_id: str | None
    run_after: datetime
    reserved_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobFailureOutcome:
    """Result of recording a failed execution."""

    job_id: int
    attempts: int
    retried: bool
    run_after: datetime | None = None


def truncate_error(message: str, *, limit: int = MAX_ERROR_CHARS) -> str:
    """Clip stored error text to the column budget."""

    if len(message) <= limit:
        return message
    return message[:limit]
