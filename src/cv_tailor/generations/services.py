"""Service layer for enqueueing and cancelling tailoring generations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlmodel import Session

from cv_tailor.config import DEFAULT_MODEL
from cv_tailor.generations.models import GenerationCreate, GenerationStatus, GenerationView
from cv_tailor.generations.payload import (
    DEFAULT_THINKING_TIME,
    TAILOR_CV_JOB,
    TailorPayload,
    parse_tailor_payload,
)
from cv_tailor.generations.repository import GenerationRepository
from cv_tailor.jobs.models import JobView
from cv_tailor.jobs.repository import DEFAULT_MAX_ATTEMPTS, JobRepository, to_job_view
from cv_tailor.storage.database import Database

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EnqueueTailoring:
    """Service input for one tailoring request."""

    owner_id: int
    source: str
    target: str
    title: str = ""
    company: str = ""
    competencies: list[str] = field(default_factory=list)
    cv_sections: str = ""
    prompt: str = ""
    model: str | None = None
    thinking_time: int = DEFAULT_THINKING_TIME
    source_document_id: int | None = None
    target_document_id: int | None = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS


@dataclass(slots=True)
class EnqueuedGeneration:
    generation: GenerationView
    job: JobView


@dataclass(slots=True)
class CancelOutcome:
    generation_id: int
    jobs_removed: int


class GenerationService:
    """Creates generation + job rows atomically and handles cancellation."""

    def __init__(
        self,
        *,
        database: Database,
        generations: GenerationRepository,
        jobs: JobRepository,
    ) -> None:
        self.database = database
        self.generations = generations
        self.jobs = jobs

    def enqueue(self, command: EnqueueTailoring) -> EnqueuedGeneration:
        """Create a queued generation and its pending job in one transaction.

        Raises:
            ConfigurationError: the resulting job payload would not validate.
        """

        with Session(self.database.engine) as session:
            generation_row = self.generations.add_queued(
                session,
                GenerationCreate(
                    owner_id=command.owner_id,
                    model=command.model or DEFAULT_MODEL,
                    thinking_time=command.thinking_time,
                    source_document_id=command.source_document_id,
                    target_document_id=command.target_document_id,
                ),
            )
            payload = TailorPayload(
                generation_id=int(generation_row.id or 0),
                owner_id=command.owner_id,
                source=command.source,
                target=command.target,
                title=command.title,
                company=command.company,
                competencies=list(command.competencies),
                cv_sections=command.cv_sections,
                prompt=command.prompt,
                source_document_id=command.source_document_id,
                target_document_id=command.target_document_id,
                model=command.model,
                thinking_time=command.thinking_time,
            ).to_dict()
            parse_tailor_payload(payload)
            job_row = self.jobs.add_pending(
                session,
                TAILOR_CV_JOB,
                payload,
                max_attempts=command.max_attempts,
            )
            session.commit()
            session.refresh(job_row)
            job = to_job_view(job_row)
            generation_id = int(generation_row.id or 0)

        generation = self.generations.get(generation_id)
        if generation is None:
            raise RuntimeError(f"Generation disappeared after enqueue: {generation_id}")
        logger.info(
            "Enqueued generation %s as job %s for owner %s.",
            generation.id,
            job.id,
            command.owner_id,
        )
        return EnqueuedGeneration(generation=generation, job=job)

    def cancel(self, generation_id: int) -> CancelOutcome:
        """Cancel a queued generation and drop its pending job."""

        existing = self.generations.get(generation_id)
        if existing is None:
            raise RuntimeError(f"Generation not found: {generation_id}")
        if existing.status != GenerationStatus.QUEUED:
            raise RuntimeError(
                f"Generation cannot be cancelled from status={existing.status.value}",
            )

        with Session(self.database.engine) as session:
            if not self.generations.cancel(session, generation_id):
                session.rollback()
                raise RuntimeError(
                    "Generation state changed concurrently while cancelling; "
                    f"please retry command (generation_id={generation_id}).",
                )
            removed = self.jobs.delete_pending_for_generation(session, generation_id)
            session.commit()

        logger.info("Cancelled generation %s (%s pending job(s) removed).", generation_id, removed)
        return CancelOutcome(generation_id=generation_id, jobs_removed=removed)
