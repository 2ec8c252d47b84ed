"""Token usage normalization and the append-only API usage ledger."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from cv_tailor.errors import LoggingError
from cv_tailor.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from cv_tailor.storage.database import Database
from cv_tailor.storage.sqlmodel_models import ApiUsage


@dataclass(slots=True)
class TokenUsage:
    """Prompt/completion/total token counters of one provider call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


def normalize_usage(raw: object) -> TokenUsage:
    """Accept both chat-style and responses-style usage field names."""

    if not isinstance(raw, dict):
        return TokenUsage()
    prompt = _as_int(raw.get("prompt_tokens", raw.get("input_tokens")))
    completion = _as_int(raw.get("completion_tokens", raw.get("output_tokens")))
    total_raw = raw.get("total_tokens")
    total = _as_int(total_raw) if total_raw is not None else prompt + completion
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass(slots=True)
class UsageEntry:
    """One ledger row written after a successful provider call."""

    owner_id: int | None
    provider: str
    endpoint: str
    operation: str
    usage: TokenUsage
    cost: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class UsageEntryView:
    id: int
    owner_id: int | None
    provider: str
    endpoint: str
    operation: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: int
    metadata: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class UsageTotals:
    calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: int = 0


@dataclass(slots=True)
class UsageSummary:
    """Lifetime and current-month usage with per-operation call counts."""

    lifetime: UsageTotals
    month: UsageTotals
    operations: dict[str, int]


class UsageRepository:
    """Append-only ledger of billable provider calls."""

    def __init__(self, database: Database) -> None:
        self.database = database
        self.engine = database.engine

    def record(self, entry: UsageEntry) -> int:
        """Append one ledger entry.

        Raises:
            LoggingError: the row could not be written.
        """

        metadata = dict(entry.metadata)
        metadata.setdefault("operation", entry.operation)
        metadata["prompt_tokens"] = entry.usage.prompt_tokens
        metadata["completion_tokens"] = entry.usage.completion_tokens
        metadata["total_tokens"] = entry.usage.total_tokens
        metadata["cost_minor_units"] = entry.cost
        try:
            with Session(self.engine) as session:
                row = ApiUsage(
                    owner_id=entry.owner_id,
                    provider=entry.provider,
                    endpoint=entry.endpoint,
                    operation=entry.operation,
                    prompt_tokens=entry.usage.prompt_tokens,
                    completion_tokens=entry.usage.completion_tokens,
                    total_tokens=entry.usage.total_tokens,
                    cost=entry.cost,
                    metadata_json=json.dumps(metadata, ensure_ascii=False, sort_keys=True),
                    created_at=to_db_datetime(utc_now()),
                )
                session.add(row)
                session.commit()
                session.refresh(row)
                return int(row.id or 0)
        except (SQLAlchemyError, TypeError, ValueError) as error:
            raise LoggingError(f"Failed to record API usage: {error}") from error

    def list_entries(
        self,
        *,
        owner_id: int | None = None,
        operation: str | None = None,
        limit: int = 100,
    ) -> list[UsageEntryView]:
        with Session(self.engine) as session:
            statement = select(ApiUsage).order_by(col(ApiUsage.id).desc()).limit(limit)
            if owner_id is not None:
                statement = statement.where(ApiUsage.owner_id == owner_id)
            if operation is not None:
                statement = statement.where(ApiUsage.operation == operation)
            rows = session.exec(statement).all()
        return [_to_entry_view(row) for row in rows]

    def summarize(self, *, owner_id: int | None = None) -> UsageSummary:
        """Aggregate lifetime and current-month totals."""

        now = utc_now()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        with Session(self.engine) as session:
            lifetime = self._totals(session, owner_id=owner_id, since=None)
            month = self._totals(session, owner_id=owner_id, since=month_start)

            statement = select(ApiUsage.operation, func.count(col(ApiUsage.id))).group_by(
                ApiUsage.operation,
            )
            if owner_id is not None:
                statement = statement.where(ApiUsage.owner_id == owner_id)
            operations = {str(name): int(count) for name, count in session.exec(statement).all()}
        return UsageSummary(lifetime=lifetime, month=month, operations=operations)

    def _totals(
        self,
        session: Session,
        *,
        owner_id: int | None,
        since: datetime | None,
    ) -> UsageTotals:
        statement = select(
            func.count(col(ApiUsage.id)),
            func.coalesce(func.sum(ApiUsage.prompt_tokens), 0),
            func.coalesce(func.sum(ApiUsage.completion_tokens), 0),
            func.coalesce(func.sum(ApiUsage.total_tokens), 0),
            func.coalesce(func.sum(ApiUsage.cost), 0),
        )
        if owner_id is not None:
            statement = statement.where(ApiUsage.owner_id == owner_id)
        if since is not None:
            statement = statement.where(col(ApiUsage.created_at) >= to_db_datetime(since))
        calls, prompt, completion, total, cost = session.exec(statement).one()
        return UsageTotals(
            calls=int(calls),
            prompt_tokens=int(prompt),
            completion_tokens=int(completion),
            total_tokens=int(total),
            cost=int(cost),
        )


def _to_entry_view(row: ApiUsage) -> UsageEntryView:
    metadata = json.loads(row.metadata_json) if row.metadata_json else {}
    return UsageEntryView(
        id=int(row.id or 0),
        owner_id=row.owner_id,
        provider=row.provider,
        endpoint=row.endpoint,
        operation=row.operation,
        prompt_tokens=row.prompt_tokens,
        completion_tokens=row.completion_tokens,
        total_tokens=row.total_tokens,
        cost=row.cost,
        metadata=metadata if isinstance(metadata, dict) else {},
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _as_int(value: object) -> int:
    if isinstance(value, bool) or value is None:
        return 0
    try:
        return max(0, int(value))  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return 0
