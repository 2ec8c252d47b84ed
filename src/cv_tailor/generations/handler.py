"""Job handler that turns a queued tailoring request into persisted artifacts."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

from cv_tailor.ai.client import DraftResult, PlanResult, StreamHandler
from cv_tailor.errors import (
    ConfigurationError,
    LoggingError,
    PipelineError,
    TransientProviderError,
)
from cv_tailor.generations.conversion import convert_markdown
from cv_tailor.generations.models import (
    ArtifactKind,
    GenerationOutputWrite,
    GenerationStatus,
    Progress,
)
from cv_tailor.generations.payload import TailorPayload, parse_tailor_payload, summarize_payload
from cv_tailor.generations.prompts import build_constraints
from cv_tailor.generations.repository import AuditLogRepository, GenerationRepository
from cv_tailor.jobs.models import JobView, truncate_error

logger = logging.getLogger(__name__)

GENERATION_FAILED_ACTION = "generation_failed"
INTERNAL_ERROR_MESSAGE = "Generation failed due to an internal error."


class TailoringClient(Protocol):
    """The two LLM calls the handler depends on."""

    def plan(
        self,
        source_text: str,
        target_text: str,
        *,
        on_chunk: StreamHandler | None = None,
        model: str | None = None,
        temperature: float | None = None,
    ) -> PlanResult: ...

    def draft(
        self,
        plan_json: str,
        constraints: str,
        *,
        on_chunk: StreamHandler | None = None,
        model: str | None = None,
        temperature: float | None = None,
    ) -> DraftResult: ...


ClientFactory = Callable[[int], TailoringClient]


class TailorJobHandler:
    """Runs plan -> constraints -> draft -> convert -> persist for one generation."""

    def __init__(
        self,
        *,
        generations: GenerationRepository,
        audit: AuditLogRepository,
        client_factory: ClientFactory,
        on_chunk: StreamHandler | None = None,
    ) -> None:
        self.generations = generations
        self.audit = audit
        self.client_factory = client_factory
        self.on_chunk = on_chunk

    def handle(self, job: JobView) -> None:
        payload = parse_tailor_payload(job.payload)
        generation = self.generations.get(payload.generation_id)
        if generation is None:
            raise ConfigurationError(f"Generation not found: {payload.generation_id}")
        if generation.status in {GenerationStatus.COMPLETED, GenerationStatus.CANCELLED}:
            logger.info(
                "Generation %s already %s; skipping job %s.",
                generation.id,
                generation.status.value,
                job.id,
            )
            return

        logger.info(
            "Starting generation %s for owner %s (source=%s chars, target=%s chars).",
            payload.generation_id,
            payload.owner_id,
            len(payload.source),
            len(payload.target),
        )
        if not self.generations.mark_processing(payload.generation_id):
            logger.info("Generation %s left processing before start.", payload.generation_id)
            return

        client = self.client_factory(payload.owner_id)
        try:
            self._run(payload=payload, client=client)
        finally:
            close = getattr(client, "close", None)
            if callable(close):
                close()

    def on_failure(self, job: JobView, error: BaseException, will_retry: bool) -> None:
        raw_id = job.payload.get("generation_id")
        if isinstance(raw_id, bool) or not isinstance(raw_id, int) or raw_id <= 0:
            return

        if will_retry:
            self.generations.mark_processing(raw_id)
            return

        message = truncate_error(_client_message(error))
        self.generations.mark_failed(raw_id, error_message=message)
        owner_id = job.payload.get("owner_id")
        try:
            self.audit.record(
                action=GENERATION_FAILED_ACTION,
                owner_id=owner_id if isinstance(owner_id, int) else None,
                details={
                    "generation_id": raw_id,
                    "error": message,
                    "payload": summarize_payload(job.payload),
                },
            )
        except LoggingError:
            logger.warning("Audit record for failed generation %s was not written.", raw_id)

    def _run(self, *, payload: TailorPayload, client: TailoringClient) -> None:
        generation_id = payload.generation_id
        plan = self._generate_plan(client=client, payload=payload)
        self.generations.update_progress(generation_id, Progress.PLAN_READY)

        constraints = build_constraints(
            target_text=payload.target,
            title=payload.title,
            company=payload.company,
            competencies=payload.competency_list(),
            cv_sections=payload.cv_sections,
            template=payload.prompt,
        )
        draft = self._generate_draft(
            client=client,
            plan_json=plan.plan_json,
            constraints=constraints,
            model=payload.model,
        )
        self.generations.update_progress(generation_id, Progress.DRAFT_READY)

        converted = convert_markdown(draft.text)
        self.generations.replace_outputs(
            generation_id,
            [
                GenerationOutputWrite(
                    artifact=ArtifactKind.PLAN,
                    mime_type="application/json",
                    output_text=plan.plan_json,
                    tokens_used=plan.usage.total_tokens,
                ),
                GenerationOutputWrite(
                    artifact=ArtifactKind.DRAFT,
                    mime_type="text/markdown",
                    output_text=draft.text,
                    tokens_used=draft.usage.total_tokens,
                ),
                GenerationOutputWrite(
                    artifact=ArtifactKind.RENDERED,
                    mime_type="text/html",
                    output_text=converted.html,
                ),
                GenerationOutputWrite(
                    artifact=ArtifactKind.PLAIN_TEXT,
                    mime_type="text/plain",
                    output_text=converted.text,
                ),
            ],
        )
        self.generations.update_progress(generation_id, Progress.OUTPUTS_PERSISTED)
        self.generations.mark_completed(generation_id, cost=plan.cost + draft.cost)
        logger.info(
            "Generation %s completed (tokens=%s cost=%s).",
            generation_id,
            plan.usage.total_tokens + draft.usage.total_tokens,
            plan.cost + draft.cost,
        )

    def _generate_plan(self, *, client: TailoringClient, payload: TailorPayload) -> PlanResult:
        try:
            return client.plan(
                payload.source,
                payload.target,
                on_chunk=self.on_chunk,
                model=payload.model,
            )
        except TransientProviderError:
            raise
        except Exception as error:  # noqa: BLE001
            raise TransientProviderError(
                f"Failed to generate tailoring plan: {error}",
            ) from error

    def _generate_draft(
        self,
        *,
        client: TailoringClient,
        plan_json: str,
        constraints: str,
        model: str | None,
    ) -> DraftResult:
        try:
            return client.draft(plan_json, constraints, on_chunk=self.on_chunk, model=model)
        except TransientProviderError:
            raise
        except Exception as error:  # noqa: BLE001
            raise TransientProviderError(
                f"Failed to generate tailored draft: {error}",
            ) from error


def _client_message(error: BaseException) -> str:
    # Only pipeline errors carry text written for clients.
    if isinstance(error, PipelineError) and str(error):
        return str(error)
    return INTERNAL_ERROR_MESSAGE
