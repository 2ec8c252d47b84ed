"""Queue worker that reserves jobs and dispatches them to typed handlers."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from cv_tailor.errors import PipelineError
from cv_tailor.jobs.models import JobView
from cv_tailor.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


class JobHandler(Protocol):
    """Executes one job type. Raising marks the attempt as failed."""

    def handle(self, job: JobView) -> None: ...

    def on_failure(self, job: JobView, error: BaseException, will_retry: bool) -> None: ...


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0
    reservation_errors: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.idle_polls += other.idle_polls
        self.reservation_errors += other.reservation_errors


class JobWorker:
    """Consumes pending jobs and executes them via registered handlers."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        handlers: Mapping[str, JobHandler],
        worker_id: str,
        idle_backoff_min_seconds: float = 1.0,
        idle_backoff_max_seconds: float = 30.0,
        stale_reservation_seconds: float = 1800.0,
    ) -> None:
        self.repository = repository
        self.handlers = dict(handlers)
        self.worker_id = worker_id
        self.idle_backoff_min_seconds = idle_backoff_min_seconds
        self.idle_backoff_max_seconds = idle_backoff_max_seconds
        self.stale_reservation_seconds = stale_reservation_seconds
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._current_job_id: int | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        try:
            self._recover_stale_reservations(summary)
            job = self.repository.reserve_next_pending(self.worker_id)
        except (SQLAlchemyError, RuntimeError):
            logger.exception("Job reservation failed for worker %s.", self.worker_id)
            summary.idle_polls = 1
            summary.reservation_errors = 1
            return summary

        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_job_id = job.id
        try:
            self._dispatch(job=job, summary=summary)
        finally:
            self._current_job_id = None
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run worker loop until stopped, idle or max_jobs reached.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = poll forever).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        idle_delay = self.idle_backoff_min_seconds
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(idle_delay)
                    idle_delay = min(self.idle_backoff_max_seconds, idle_delay * 2)
                    continue

                consecutive_idle = 0
                idle_delay = self.idle_backoff_min_seconds

    def _recover_stale_reservations(self, summary: WorkerRunSummary) -> None:
        if self.stale_reservation_seconds <= 0:
            return
        outcomes = self.repository.recover_stale_reservations(
            stale_after=timedelta(seconds=self.stale_reservation_seconds),
        )
        for outcome in outcomes:
            if outcome.retried:
                continue
            summary.failed += 1
            job = self.repository.get_job(outcome.job_id)
            handler = self.handlers.get(job.type) if job is not None else None
            if job is None or handler is None:
                continue
            self._notify_failure(
                handler=handler,
                job=job,
                error=PipelineError(job.error or "Job reservation expired."),
                will_retry=False,
            )

    def _dispatch(self, *, job: JobView, summary: WorkerRunSummary) -> None:
        handler = self.handlers.get(job.type)
        if handler is None:
            logger.error("Job %s has unknown type %r; failing permanently.", job.id, job.type)
            self._record_failure(
                job=job,
                message=f"Unknown job type: {job.type}",
                retry=False,
                summary=summary,
            )
            return

        logger.info(
            "Job %s (%s) reserved by %s, attempt %s.",
            job.id,
            job.type,
            self.worker_id,
            job.attempts + 1,
        )
        try:
            handler.handle(job)
        except Exception as error:  # noqa: BLE001
            transient = isinstance(error, PipelineError) and error.transient
            will_retry = transient and job.attempts + 1 < job.max_attempts
            if isinstance(error, PipelineError):
                logger.warning("Job %s failed (transient=%s): %s", job.id, transient, error)
            else:
                logger.exception("Job %s raised an unexpected error.", job.id)
            self._notify_failure(handler=handler, job=job, error=error, will_retry=will_retry)
            self._record_failure(
                job=job,
                message=str(error) or type(error).__name__,
                retry=will_retry,
                summary=summary,
            )
            return

        try:
            self.repository.ack(job)
        except (SQLAlchemyError, RuntimeError):
            logger.exception("Failed to acknowledge job %s.", job.id)
            return
        summary.succeeded = 1
        logger.info("Job %s completed.", job.id)

    def _notify_failure(
        self,
        *,
        handler: JobHandler,
        job: JobView,
        error: BaseException,
        will_retry: bool,
    ) -> None:
        try:
            handler.on_failure(job, error, will_retry)
        except Exception:  # noqa: BLE001
            logger.exception("Failure hook raised for job %s.", job.id)

    def _record_failure(
        self,
        *,
        job: JobView,
        message: str,
        retry: bool,
        summary: WorkerRunSummary,
    ) -> None:
        try:
            outcome = self.repository.fail(job, message, retry=retry)
        except (SQLAlchemyError, RuntimeError):
            logger.exception("Failed to record failure for job %s.", job.id)
            summary.failed += 1
            return
        if outcome.retried:
            summary.retried += 1
            logger.info(
                "Job %s scheduled for retry after attempt %s at %s.",
                job.id,
                outcome.attempts,
                outcome.run_after.isoformat() if outcome.run_after is not None else "now",
            )
        else:
            summary.failed += 1
            logger.info("Job %s failed permanently after %s attempt(s).", job.id, outcome.attempts)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def request_stop(self, *, signal_name: str = "manual") -> None:
        """Ask the loop to exit once the current job has been settled."""

        self._stop_requested = True
        self._stop_signal_name = signal_name
        if self._current_job_id is not None:
            logger.info(
                "Stop requested (%s); finishing job %s first.",
                signal_name,
                self._current_job_id,
            )
        else:
            logger.info("Stop requested (%s).", signal_name)
