"""Controllers for tailoring CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from cv_tailor.ai.client import AIClient
from cv_tailor.ai.usage import UsageRepository, UsageTotals
from cv_tailor.config import Settings
from cv_tailor.generations.handler import TailorJobHandler
from cv_tailor.generations.models import ArtifactKind
from cv_tailor.generations.payload import TAILOR_CV_JOB
from cv_tailor.generations.repository import AuditLogRepository, GenerationRepository
from cv_tailor.generations.services import EnqueueTailoring, GenerationService
from cv_tailor.jobs.models import JobStatus
from cv_tailor.jobs.repository import JobRepository
from cv_tailor.jobs.worker import JobWorker
from cv_tailor.storage.database import Database
from cv_tailor.stream.poller import GenerationStreamPoller
from cv_tailor.stream.repository import SnapshotRepository
from cv_tailor.stream.transport import pump


@dataclass(slots=True)
class TailorEnqueueCommand:
    """CLI input for queueing one tailoring request."""

    db_path: Path | None
    owner_id: int
    source_path: Path
    target_path: Path
    title: str = ""
    company: str = ""
    competencies: tuple[str, ...] = ()
    cv_sections: str = ""
    prompt_path: Path | None = None
    model: str | None = None
    thinking_time: int = 30
    source_document_id: int | None = None
    target_document_id: int | None = None


@dataclass(slots=True)
class TailorWorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class TailorGenerationCommand:
    """CLI input for commands addressing one generation."""

    db_path: Path | None
    generation_id: int


@dataclass(slots=True)
class TailorStatusCommand:
    db_path: Path | None
    generation_id: int
    show_artifact: str | None = None


@dataclass(slots=True)
class TailorJobsCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TailorUsageCommand:
    db_path: Path | None
    owner_id: int | None
    limit: int


class TailorCliController:
    """Coordinates enqueue, worker, stream and inspection CLI operations."""

    def enqueue(self, command: TailorEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        prompt = (
            command.prompt_path.read_text("utf-8") if command.prompt_path is not None else ""
        )
        with _database(settings) as database:
            service = _generation_service(database, settings)
            enqueued = service.enqueue(
                EnqueueTailoring(
                    owner_id=command.owner_id,
                    source=command.source_path.read_text("utf-8"),
                    target=command.target_path.read_text("utf-8"),
                    title=command.title,
                    company=command.company,
                    competencies=list(command.competencies),
                    cv_sections=command.cv_sections,
                    prompt=prompt,
                    model=command.model,
                    thinking_time=command.thinking_time,
                    source_document_id=command.source_document_id,
                    target_document_id=command.target_document_id,
                    max_attempts=settings.worker.max_attempts,
                ),
            )

        return [
            "Generation enqueued: "
            f"generation_id={enqueued.generation.id} job_id={enqueued.job.id} "
            f"status={enqueued.generation.status.value} model={enqueued.generation.model}",
        ]

    def run_worker(self, command: TailorWorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        with _database(settings) as database:
            usage = UsageRepository(database)

            def client_factory(owner_id: int) -> AIClient:
                return AIClient.from_settings(
                    settings.ai,
                    owner_id=owner_id,
                    usage_recorder=usage,
                )

            handler = TailorJobHandler(
                generations=GenerationRepository(database),
                audit=AuditLogRepository(database),
                client_factory=client_factory,
            )
            worker = JobWorker(
                repository=_job_repository(database, settings),
                handlers={TAILOR_CV_JOB: handler},
                worker_id=settings.worker.worker_id,
                idle_backoff_min_seconds=settings.worker.idle_backoff_min_seconds,
                idle_backoff_max_seconds=settings.worker.idle_backoff_max_seconds,
                stale_reservation_seconds=settings.worker.stale_reservation_seconds,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"idle_polls={summary.idle_polls} reservation_errors={summary.reservation_errors}",
        ]

    def watch(
        self,
        command: TailorGenerationCommand,
        *,
        write: Callable[[str], object],
        flush: Callable[[], object] | None = None,
    ) -> int:
        """Stream progress events for one generation; returns the number of frames."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_stream()
        with _database(settings) as database:
            poller = GenerationStreamPoller(
                SnapshotRepository(database),
                command.generation_id,
                poll_interval_seconds=settings.stream.poll_interval_seconds,
                heartbeat_interval_seconds=settings.stream.heartbeat_interval_seconds,
                timeout_seconds=settings.stream.timeout_seconds,
            )
            return pump(poller, write, flush)

    def status(self, command: TailorStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            generations = GenerationRepository(database)
            generation = generations.get(command.generation_id)
            if generation is None:
                raise ValueError(f"Generation not found: {command.generation_id}")
            outputs = generations.list_outputs(command.generation_id)

        lines = [
            f"Generation: {generation.id}",
            f"owner_id={generation.owner_id} model={generation.model} "
            f"thinking_time={generation.thinking_time}",
            f"status={generation.status.value} progress={generation.progress_percent}% "
            f"cost={generation.cost}",
            f"updated_at={generation.updated_at.isoformat()}",
        ]
        if generation.error_message:
            lines.append(f"error={generation.error_message}")
        lines.append(f"Outputs: {len(outputs)}")
        for output in outputs:
            lines.append(
                f"- {output.artifact.value} mime={output.mime_type} "
                f"tokens={output.tokens_used} chars={len(output.output_text or '')}",
            )

        if command.show_artifact is not None:
            artifact = ArtifactKind(command.show_artifact.strip().lower())
            selected = next((item for item in outputs if item.artifact == artifact), None)
            if selected is None:
                raise ValueError(f"Artifact not stored for generation: {artifact.value}")
            lines.append("")
            lines.append(selected.output_text or "")
        return lines

    def cancel(self, command: TailorGenerationCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            outcome = _generation_service(database, settings).cancel(command.generation_id)
        return [
            f"Generation cancelled: {outcome.generation_id} "
            f"(pending jobs removed={outcome.jobs_removed})",
        ]

    def list_jobs(self, command: TailorJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = JobStatus(command.status.strip().lower()) if command.status else None
        with _database(settings) as database:
            jobs = _job_repository(database, settings).list_jobs(
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            generation_id = job.payload.get("generation_id", "-")
            line = (
                f"- {job.id} type={job.type} status={job.status.value} "
                f"attempts={job.attempts}/{job.max_attempts} generation_id={generation_id} "
                f"run_after={job.run_after.isoformat()}"
            )
            if job.error:
                line += f" error={job.error}"
            lines.append(line)
        return lines

    def usage(self, command: TailorUsageCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            repository = UsageRepository(database)
            summary = repository.summarize(owner_id=command.owner_id)
            entries = repository.list_entries(owner_id=command.owner_id, limit=command.limit)

        lines = [
            _totals_line("Lifetime", summary.lifetime),
            _totals_line("This month", summary.month),
        ]
        if summary.operations:
            lines.append(
                "Operations: "
                + " ".join(f"{name}={count}" for name, count in sorted(summary.operations.items())),
            )
        lines.append(f"Recent calls: {len(entries)}")
        for entry in entries:
            lines.append(
                f"- {entry.id} {entry.created_at.isoformat()} {entry.operation} "
                f"model={entry.metadata.get('model', '-')} tokens={entry.total_tokens} "
                f"cost={entry.cost}",
            )
        return lines


def _totals_line(label: str, totals: UsageTotals) -> str:
    return (
        f"{label}: calls={totals.calls} prompt_tokens={totals.prompt_tokens} "
        f"completion_tokens={totals.completion_tokens} total_tokens={totals.total_tokens} "
        f"cost={totals.cost}"
    )


def _job_repository(database: Database, settings: Settings) -> JobRepository:
    return JobRepository(
        database,
        retry_base_seconds=settings.worker.retry_base_seconds,
        retry_max_seconds=settings.worker.retry_max_seconds,
    )


def _generation_service(database: Database, settings: Settings) -> GenerationService:
    return GenerationService(
        database=database,
        generations=GenerationRepository(database),
        jobs=_job_repository(database, settings),
    )


@contextmanager
def _database(settings: Settings) -> Iterator[Database]:
    database = Database(settings.db_path)
    database.init_schema()
    try:
        yield database
    finally:
        database.close()
