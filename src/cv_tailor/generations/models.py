"""Domain models for generations and their persisted artifacts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class GenerationStatus(str, Enum):
    """Generation lifecycle states visible to clients."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ArtifactKind(str, Enum):
    PLAN = "plan"
    DRAFT = "draft"
    RENDERED = "rendered"
    PLAIN_TEXT = "plain_text"


class Progress:
    """Stage milestones written by the handler."""

    QUEUED = 0
    PROCESSING = 10
    PLAN_READY = 40
    DRAFT_READY = 70
    OUTPUTS_PERSISTED = 90
    COMPLETED = 100


@dataclass(slots=True)
class GenerationCreate:
    """Input payload for creating a queued generation."""

    owner_id: int
    model: str
    thinking_time: int = 30
    source_document_id: int | None = None
    target_document_id: int | None = None


@dataclass(slots=True)
class GenerationView:
    id: int
    owner_id: int
    source_document_id: int | None
    target_document_id: int | None
    model: str
    thinking_time: int
    status: GenerationStatus
    progress_percent: int
    cost: int
    error_message: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class GenerationOutputWrite:
    """One artifact staged for atomic replacement."""

    artifact: ArtifactKind
    mime_type: str
    output_text: str | None = None
    content: bytes | None = None
    tokens_used: int = 0


@dataclass(slots=True)
class GenerationOutputView:
    id: int
    generation_id: int
    artifact: ArtifactKind
    mime_type: str
    output_text: str | None
    content: bytes | None
    tokens_used: int
    created_at: datetime
