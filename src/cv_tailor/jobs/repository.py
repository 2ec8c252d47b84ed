"""Persistent at-least-once job queue backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from cv_tailor.jobs.models import JobFailureOutcome, JobStatus, JobView, truncate_error
from cv_tailor.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from cv_tailor.storage.database import Database
from cv_tailor.storage.sqlmodel_models import Job

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


class JobRepository:
    """Queue persistence facade: enqueue, reserve, ack and fail."""

    def __init__(
        self,
        database: Database,
        *,
        retry_base_seconds: int = 5,
        retry_max_seconds: int = 300,
    ) -> None:
        self.database = database
        self.engine = database.engine
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        run_after: datetime | None = None,
    ) -> JobView:
        """Create a pending job."""

        with Session(self.engine) as session:
            row = self.add_pending(
                session,
                job_type,
                payload,
                max_attempts=max_attempts,
                run_after=run_after,
            )
            session.commit()
            session.refresh(row)
            return to_job_view(row)

    def add_pending(
        self,
        session: Session,
        job_type: str,
        payload: dict[str, Any],
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        run_after: datetime | None = None,
    ) -> Job:
        """Stage a pending job inside a caller-owned transaction."""

        if not job_type.strip():
            raise ValueError("Job type must be a non-empty string.")
        if max_attempts <= 0:
            raise ValueError(f"max_attempts must be > 0, got {max_attempts}.")

        now = utc_now()
        row = Job(
            type=job_type,
            payload_json=json.dumps(payload, ensure_ascii=False, sort_keys=True),
            attempts=0,
            max_attempts=max_attempts,
            status=JobStatus.PENDING.value,
            run_after=to_db_datetime(run_after or now),
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        session.add(row)
        session.flush()
        return row

    def reserve_next_pending(self, worker_id: str) -> JobView | None:
        """Atomically reserve the oldest runnable pending job."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Job)
                    .where(
                        Job.status == JobStatus.PENDING.value,
                        col(Job.run_after) <= to_db_datetime(now),
                    )
                    .order_by(
                        col(Job.run_after).asc(),
                        col(Job.id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.id) == candidate.id,
                        col(Job.status) == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.RESERVED.value,
                        worker_id=worker_id,
                        reserved_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                session.commit()
                reserved = session.exec(select(Job).where(Job.id == candidate.id)).one()
                return to_job_view(reserved)

    def ack(self, job: JobView) -> bool:
        """Mark a reserved job as completed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == job.id,
                    col(Job.status) == JobStatus.RESERVED.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    error=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning("Job %s was not reserved when acknowledged.", job.id)
                return False
            session.commit()
            return True

    def fail(self, job: JobView, error: str, *, retry: bool) -> JobFailureOutcome:
        """Record a failed execution and either reschedule or fail permanently."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.id == job.id)).one_or_none()
            if row is None:
                raise RuntimeError(f"Job not found: {job.id}")

            attempts = row.attempts + 1
            will_retry = retry and attempts < row.max_attempts
            run_after: datetime | None = None
            values: dict[str, Any] = {
                "attempts": attempts,
                "error": truncate_error(error),
                "updated_at": to_db_datetime(now),
            }
            if will_retry:
                run_after = now + timedelta(seconds=self.compute_retry_delay(attempts))
                values.update(
                    status=JobStatus.PENDING.value,
                    run_after=to_db_datetime(run_after),
                    reserved_at=None,
                    worker_id=None,
                )
            else:
                values.update(status=JobStatus.FAILED.value)

            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == job.id,
                    col(Job.status) == JobStatus.RESERVED.value,
                    col(Job.attempts) == row.attempts,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while recording failure "
                    f"(job_id={job.id}).",
                )
            session.commit()

        return JobFailureOutcome(
            job_id=job.id,
            attempts=attempts,
            retried=will_retry,
            run_after=run_after,
        )

    def recover_stale_reservations(self, *, stale_after: timedelta) -> list[JobFailureOutcome]:
        """Release reservations older than `stale_after` whose worker never settled them.

        An expired reservation counts as an attempt: the job returns to pending
        while attempts remain and fails permanently otherwise.
        """

        if stale_after.total_seconds() <= 0:
            raise ValueError("stale_after must be > 0")

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        outcomes: list[JobFailureOutcome] = []
        with Session(self.engine) as session:
            stale_rows = session.exec(
                select(Job)
                .where(
                    Job.status == JobStatus.RESERVED.value,
                    col(Job.reserved_at) < cutoff,
                )
                .order_by(col(Job.id).asc()),
            ).all()

            for row in stale_rows:
                attempts = row.attempts + 1
                will_retry = attempts < row.max_attempts
                values: dict[str, Any] = {
                    "attempts": attempts,
                    "error": truncate_error(
                        f"Reservation by {row.worker_id or 'unknown worker'} expired "
                        "before the job was settled.",
                    ),
                    "worker_id": None,
                    "reserved_at": None,
                    "updated_at": to_db_datetime(now),
                }
                if will_retry:
                    values.update(status=JobStatus.PENDING.value, run_after=to_db_datetime(now))
                else:
                    values.update(status=JobStatus.FAILED.value)

                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.id) == row.id,
                        col(Job.status) == JobStatus.RESERVED.value,
                        col(Job.attempts) == row.attempts,
                        col(Job.reserved_at) == row.reserved_at,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    continue
                logger.warning(
                    "Recovered stale reservation of job %s held by %s (attempt %s, %s).",
                    row.id,
                    row.worker_id,
                    attempts,
                    "requeued" if will_retry else "failed permanently",
                )
                outcomes.append(
                    JobFailureOutcome(
                        job_id=int(row.id or 0),
                        attempts=attempts,
                        retried=will_retry,
                        run_after=now if will_retry else None,
                    ),
                )
            session.commit()
        return outcomes

    def compute_retry_delay(self, attempts: int) -> int:
        """Exponential retry delay in seconds for the given attempt count."""

        return min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(attempts - 1, 0)),
        )

    def get_job(self, job_id: int) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.id == job_id)).one_or_none()
            return to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc(), col(Job.id).desc())
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement.limit(limit)).all()
        return [to_job_view(row) for row in rows]

    def delete_pending_for_generation(self, session: Session, generation_id: int) -> int:
        """Drop pending jobs that reference a generation; returns deleted count."""

        result = session.exec(
            sa_delete(Job)
            .where(
                col(Job.status) == JobStatus.PENDING.value,
                func.json_extract(Job.payload_json, "$.generation_id") == generation_id,
            )
            .execution_options(synchronize_session=False),
        )
        return int(result.rowcount or 0)


def to_job_view(row: Job) -> JobView:
    payload = json.loads(row.payload_json) if row.payload_json else {}
    if row.id is None:
        raise ValueError("Job row is missing primary key.")
    return JobView(
        id=row.id,
        type=row.type,
        payload=payload if isinstance(payload, dict) else {},
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        status=JobStatus(row.status),
        error=row.error,
        worker_id=row.worker_id,
        run_after=to_utc_aware_datetime(row.run_after),
        reserved_at=optional_utc(row.reserved_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
