"""Persistence for generations, their artifacts and the audit trail."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from cv_tailor.errors import LoggingError, PersistenceError
from cv_tailor.generations.models import (
    ArtifactKind,
    GenerationCreate,
    GenerationOutputView,
    GenerationOutputWrite,
    GenerationStatus,
    GenerationView,
    Progress,
)
from cv_tailor.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from cv_tailor.storage.database import Database
from cv_tailor.storage.sqlmodel_models import AuditLog, Generation, GenerationOutput

logger = logging.getLogger(__name__)

_PROCESSING_FROM = (
    GenerationStatus.QUEUED,
    GenerationStatus.PROCESSING,
    GenerationStatus.FAILED,
)
_FAILED_FROM = (GenerationStatus.QUEUED, GenerationStatus.PROCESSING)


class GenerationRepository:
    """Generation rows with guarded status transitions."""

    def __init__(self, database: Database) -> None:
        self.database = database
        self.engine = database.engine

    def create(self, payload: GenerationCreate) -> GenerationView:
        with Session(self.engine) as session:
            row = self.add_queued(session, payload)
            session.commit()
            session.refresh(row)
            return _to_generation_view(row)

    def add_queued(self, session: Session, payload: GenerationCreate) -> Generation:
        """Stage a queued generation inside a caller-owned transaction."""

        now = to_db_datetime(utc_now())
        row = Generation(
            owner_id=payload.owner_id,
            source_document_id=payload.source_document_id,
            target_document_id=payload.target_document_id,
            model=payload.model,
            thinking_time=payload.thinking_time,
            status=GenerationStatus.QUEUED.value,
            progress_percent=Progress.QUEUED,
            cost=0,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        return row

    def get(self, generation_id: int) -> GenerationView | None:
        with Session(self.engine) as session:
            row = session.get(Generation, generation_id)
            return _to_generation_view(row) if row is not None else None

    def list_generations(
        self,
        *,
        owner_id: int | None = None,
        limit: int = 20,
    ) -> list[GenerationView]:
        with Session(self.engine) as session:
            statement = select(Generation).order_by(col(Generation.id).desc()).limit(limit)
            if owner_id is not None:
                statement = statement.where(Generation.owner_id == owner_id)
            rows = session.exec(statement).all()
        return [_to_generation_view(row) for row in rows]

    def mark_processing(self, generation_id: int) -> bool:
        """Enter processing at the first milestone; also the retry re-entry point."""

        return self._transition(
            generation_id,
            allowed_from=_PROCESSING_FROM,
            status=GenerationStatus.PROCESSING,
            progress_percent=Progress.PROCESSING,
            error_message=None,
        )

    def update_progress(self, generation_id: int, percent: int) -> bool:
        if not 0 <= percent <= 100:  # noqa: PLR2004
            raise ValueError(f"Progress must be within 0..100, got {percent}.")
        return self._transition(
            generation_id,
            allowed_from=(GenerationStatus.PROCESSING,),
            progress_percent=percent,
        )

    def mark_completed(self, generation_id: int, *, cost: int) -> bool:
        return self._transition(
            generation_id,
            allowed_from=(GenerationStatus.PROCESSING,),
            status=GenerationStatus.COMPLETED,
            progress_percent=Progress.COMPLETED,
            cost=cost,
            error_message=None,
        )

    def mark_failed(self, generation_id: int, *, error_message: str) -> bool:
        return self._transition(
            generation_id,
            allowed_from=_FAILED_FROM,
            status=GenerationStatus.FAILED,
            error_message=error_message,
        )

    def cancel(self, session: Session, generation_id: int) -> bool:
        """Cancel a generation that has not started; runs in the caller's transaction."""

        result = session.exec(
            sa_update(Generation)
            .where(
                col(Generation.id) == generation_id,
                col(Generation.status) == GenerationStatus.QUEUED.value,
            )
            .values(
                status=GenerationStatus.CANCELLED.value,
                updated_at=to_db_datetime(utc_now()),
            ),
        )
        return result.rowcount == 1

    def replace_outputs(
        self,
        generation_id: int,
        outputs: Iterable[GenerationOutputWrite],
    ) -> None:
        """Delete existing artifacts and insert the new set in one transaction.

        Raises:
            PersistenceError: the transaction failed and was rolled back.
        """

        now = to_db_datetime(utc_now())
        try:
            with Session(self.engine) as session:
                session.exec(
                    sa_delete(GenerationOutput).where(
                        col(GenerationOutput.generation_id) == generation_id,
                    ),
                )
                for output in outputs:
                    session.add(
                        GenerationOutput(
                            generation_id=generation_id,
                            artifact=output.artifact.value,
                            mime_type=output.mime_type,
                            content=output.content,
                            output_text=output.output_text,
                            tokens_used=output.tokens_used,
                            created_at=now,
                        ),
                    )
                session.commit()
        except SQLAlchemyError as error:
            logger.exception("Output transaction for generation %s rolled back.", generation_id)
            raise PersistenceError(
                f"Failed to persist outputs for generation {generation_id}.",
            ) from error

    def list_outputs(self, generation_id: int) -> list[GenerationOutputView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationOutput)
                .where(GenerationOutput.generation_id == generation_id)
                .order_by(col(GenerationOutput.id).asc()),
            ).all()
        return [_to_output_view(row) for row in rows]

    def _transition(
        self,
        generation_id: int,
        *,
        allowed_from: tuple[GenerationStatus, ...],
        **changes: Any,
    ) -> bool:
        values = {
            key: value.value if isinstance(value, GenerationStatus) else value
            for key, value in changes.items()
        }
        values["updated_at"] = to_db_datetime(utc_now())
        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(Generation)
                    .where(
                        col(Generation.id) == generation_id,
                        col(Generation.status).in_([status.value for status in allowed_from]),
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    logger.warning(
                        "Generation %s not updated: status outside %s.",
                        generation_id,
                        ", ".join(status.value for status in allowed_from),
                    )
                    return False
                session.commit()
                return True
        except SQLAlchemyError as error:
            logger.exception("Status update for generation %s failed.", generation_id)
            raise PersistenceError(f"Unable to update generation {generation_id}.") from error


class AuditLogRepository:
    """Append-only audit trail; callers pass redacted details only."""

    def __init__(self, database: Database) -> None:
        self.database = database
        self.engine = database.engine

    def record(self, *, action: str, owner_id: int | None, details: dict[str, Any]) -> None:
        """Raises LoggingError when the row cannot be written."""

        try:
            with Session(self.engine) as session:
                session.add(
                    AuditLog(
                        owner_id=owner_id,
                        action=action,
                        details_json=json.dumps(details, ensure_ascii=False, sort_keys=True),
                        created_at=to_db_datetime(utc_now()),
                    ),
                )
                session.commit()
        except (SQLAlchemyError, TypeError, ValueError) as error:
            raise LoggingError(f"Failed to write audit record {action!r}: {error}") from error

    def list_entries(self, *, action: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        with Session(self.engine) as session:
            statement = select(AuditLog).order_by(col(AuditLog.id).desc()).limit(limit)
            if action is not None:
                statement = statement.where(AuditLog.action == action)
            rows = session.exec(statement).all()
        return [
            {
                "id": row.id,
                "owner_id": row.owner_id,
                "action": row.action,
                "details": json.loads(row.details_json) if row.details_json else {},
                "created_at": to_utc_aware_datetime(row.created_at),
            }
            for row in rows
        ]


def _to_generation_view(row: Generation) -> GenerationView:
    return GenerationView(
        id=int(row.id or 0),
        owner_id=row.owner_id,
        source_document_id=row.source_document_id,
        target_document_id=row.target_document_id,
        model=row.model,
        thinking_time=row.thinking_time,
        status=GenerationStatus(row.status),
        progress_percent=row.progress_percent,
        cost=row.cost,
        error_message=row.error_message,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_output_view(row: GenerationOutput) -> GenerationOutputView:
    return GenerationOutputView(
        id=int(row.id or 0),
        generation_id=row.generation_id,
        artifact=ArtifactKind(row.artifact),
        mime_type=row.mime_type,
        output_text=row.output_text,
        content=row.content,
        tokens_used=row.tokens_used,
        created_at=to_utc_aware_datetime(row.created_at),
    )
