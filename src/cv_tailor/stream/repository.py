"""Read-only snapshot of generation progress for live streaming."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func
from sqlmodel import Session, col, select

from cv_tailor.storage.common import optional_utc, to_utc_aware_datetime
from cv_tailor.storage.database import Database
from cv_tailor.storage.sqlmodel_models import Generation, GenerationOutput


@dataclass(slots=True)
class StreamSnapshot:
    """Generation row joined with aggregates over its outputs."""

    id: int
    status: str
    progress_percent: int
    cost: int
    total_tokens: int
    error_message: str | None
    updated_at: datetime
    latest_output_at: datetime | None


class SnapshotRepository:
    def __init__(self, database: Database) -> None:
        self.database = database
        self.engine = database.engine

    def fetch_snapshot(self, generation_id: int) -> StreamSnapshot | None:
        """One SELECT: the generation plus token sum and latest output time."""

        with Session(self.engine) as session:
            row = session.exec(
                select(
                    Generation.id,
                    Generation.status,
                    Generation.progress_percent,
                    Generation.cost,
                    func.coalesce(func.sum(GenerationOutput.tokens_used), 0),
                    Generation.error_message,
                    Generation.updated_at,
                    func.max(GenerationOutput.created_at),
                )
                .select_from(Generation)
                .outerjoin(
                    GenerationOutput,
                    col(GenerationOutput.generation_id) == col(Generation.id),
                )
                .where(col(Generation.id) == generation_id)
                .group_by(col(Generation.id)),
            ).one_or_none()

        if row is None:
            return None
        (
            snapshot_id,
            status,
            progress_percent,
            cost,
            total_tokens,
            error_message,
            updated_at,
            latest_output_at,
        ) = row
        return StreamSnapshot(
            id=int(snapshot_id),
            status=str(status),
            progress_percent=int(progress_percent),
            cost=int(cost),
            total_tokens=int(total_tokens or 0),
            error_message=error_message,
            updated_at=to_utc_aware_datetime(updated_at),
            latest_output_at=optional_utc(_as_datetime(latest_output_at)),
        )


def _as_datetime(value: datetime | str | None) -> datetime | None:
    # SQLite hands MAX() back as text when the type is not carried through.
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
