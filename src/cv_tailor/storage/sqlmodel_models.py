"""SQLModel ORM tables for the tailoring pipeline."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, LargeBinary, Text
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_status_run_after", "status", "run_after"),
        Index("idx_jobs_created_at", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    type: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=5)
    status: str = Field(default="pending")
    error: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = Field(default=None, index=True)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    reserved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Generation(SQLModel, table=True):
    __tablename__ = "generations"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generations_owner_created", "owner_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    owner_id: int = Field(index=True)
    source_document_id: int | None = None
    target_document_id: int | None = None
    model: str
    thinking_time: int = Field(default=30)
    status: str = Field(default="queued", index=True)
    progress_percent: int = Field(default=0)
    cost: int = Field(default=0)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationOutput(SQLModel, table=True):
    __tablename__ = "generation_outputs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_generation_outputs_generation_artifact", "generation_id", "artifact"),
    )

    id: int | None = Field(default=None, primary_key=True)
    generation_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("generations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    artifact: str
    mime_type: str
    content: bytes | None = Field(default=None, sa_column=Column(LargeBinary))
    output_text: str | None = Field(default=None, sa_column=Column(Text))
    tokens_used: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ApiUsage(SQLModel, table=True):
    __tablename__ = "api_usage"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_api_usage_owner_created", "owner_id", "created_at"),
        Index("idx_api_usage_operation_created", "operation", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    owner_id: int | None = Field(default=None)
    provider: str
    endpoint: str
    operation: str
    prompt_tokens: int = Field(default=0)
    completion_tokens: int = Field(default=0)
    total_tokens: int = Field(default=0)
    cost: int = Field(default=0)
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_audit_logs_action_created", "action", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    owner_id: int | None = Field(default=None, index=True)
    action: str
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
