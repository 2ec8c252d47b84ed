"""Synchronous LLM client: plan and draft calls with retry, streaming and metering."""

from __future__ import annotations

import json
import logging
import random
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from cv_tailor.ai.plan import PLAN_SCHEMA_NAME, TailoringPlan, parse_plan, plan_json_schema
from cv_tailor.ai.pricing import ModelTariff, calculate_cost, parse_tariffs
from cv_tailor.ai.usage import TokenUsage, UsageEntry, normalize_usage
from cv_tailor.config import DEFAULT_MODEL, AiSettings
from cv_tailor.errors import ProviderRequestError

logger = logging.getLogger(__name__)

StreamHandler = Callable[[str], None]

PROVIDER = "openai"
ENDPOINT_RESPONSES = "responses"
MAX_ATTEMPTS = 5
INITIAL_BACKOFF_MS = 200
MAX_BACKOFF_MS = 4000
JITTER_RATIO = 0.2
FALLBACK_MODEL = DEFAULT_MODEL

PLAN_SYSTEM_PROMPT = (
    "You are a planning assistant that prepares tailored job application strategies. "
    "Always respond with a valid JSON object following this schema: "
    '{"summary": string, "strengths": string[], "gaps": string[], "next_steps": '
    '[{"task": string, "rationale": string, "priority": "high"|"medium"|"low", '
    '"estimated_minutes": int}]}. '
    "Ensure arrays are never empty: use informative entries. "
    "Avoid markdown or prose outside JSON."
)
DRAFT_SYSTEM_PROMPT = (
    "You are a professional writer assisting with job application materials. "
    "Draft polished markdown content that aligns with the provided plan. "
    "Use headings, bullet lists, and emphasis where helpful. "
    "Never include fenced code blocks unless explicitly requested."
)

_MISSING_MODEL_MARKERS = ("does not exist", "was not found", "doesn't exist", "unknown model")
_SCHEMA_MARKERS = (
    "response_format",
    "response.format",
    "text.format",
    "json_schema",
    "structured output",
)


class UsageRecorder(Protocol):
    """Sink for ledger entries; the default implementation is UsageRepository."""

    def record(self, entry: UsageEntry) -> int: ...


@dataclass(slots=True)
class CompletionResult:
    """Raw text result of one successful provider call."""

    content: str
    usage: TokenUsage
    cost: int
    model: str
    response_id: str | None = None
    attempts: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PlanResult:
    """Validated plan with its canonical JSON text and metering."""

    plan: TailoringPlan
    plan_json: str
    usage: TokenUsage
    cost: int
    model: str


@dataclass(slots=True)
class DraftResult:
    """Markdown draft text with metering."""

    text: str
    usage: TokenUsage
    cost: int
    model: str


class AIClient:
    """Wrapper around the Responses-style LLM HTTP API."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        plan_model: str = DEFAULT_MODEL,
        draft_model: str = DEFAULT_MODEL,
        max_output_tokens: int = 1024,
        timeout_seconds: float = 60.0,
        temperature: float | None = None,
        tariffs: dict[str, ModelTariff] | None = None,
        owner_id: int | None = None,
        usage_recorder: UsageRecorder | None = None,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        max_attempts: int = MAX_ATTEMPTS,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.plan_model = plan_model
        self.draft_model = draft_model
        self.max_output_tokens = max(1, max_output_tokens)
        self.temperature = temperature
        self.tariffs = tariffs or {}
        self.owner_id = owner_id
        self.usage_recorder = usage_recorder
        self.max_attempts = max(1, max_attempts)
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout_seconds)
        self._sleep = sleep
        self._random = rng or random.Random()  # noqa: S311

    @classmethod
    def from_settings(
        cls,
        settings: AiSettings,
        *,
        owner_id: int | None = None,
        usage_recorder: UsageRecorder | None = None,
        http_client: httpx.Client | None = None,
    ) -> AIClient:
        return cls(
            api_key=settings.api_key,
            base_url=settings.base_url,
            plan_model=settings.plan_model,
            draft_model=settings.draft_model,
            max_output_tokens=settings.max_output_tokens,
            timeout_seconds=settings.timeout_seconds,
            temperature=settings.temperature,
            tariffs=parse_tariffs(settings.tariff_json),
            owner_id=owner_id,
            usage_recorder=usage_recorder,
            http_client=http_client,
        )

    def close(self) -> None:
        if self._owns_http_client:
            self._http.close()

    def plan(
        self,
        source_text: str,
        target_text: str,
        *,
        on_chunk: StreamHandler | None = None,
        model: str | None = None,
        temperature: float | None = None,
    ) -> PlanResult:
        """Request a structured tailoring plan and validate it.

        Raises:
            ProviderRequestError: the provider call failed after retries.
            MalformedResponseError: the returned text is not a valid plan.
        """

        user_message = (
            f"Job description:\n{source_text.strip()}\n\n"
            f"Candidate CV:\n{target_text.strip()}\n\nCreate the plan."
        )
        result = self._complete_with_fallbacks(
            operation="plan",
            system_prompt=PLAN_SYSTEM_PROMPT,
            user_message=user_message,
            model=model or self.plan_model,
            temperature=temperature,
            text_format={
                "type": "json_schema",
                "name": PLAN_SCHEMA_NAME,
                "schema": plan_json_schema(),
                "strict": True,
            },
            on_chunk=on_chunk,
        )
        plan = parse_plan(result.content)
        return PlanResult(
            plan=plan,
            plan_json=plan.to_json(),
            usage=result.usage,
            cost=result.cost,
            model=result.model,
        )

    def draft(
        self,
        plan_json: str,
        constraints: str,
        *,
        on_chunk: StreamHandler | None = None,
        model: str | None = None,
        temperature: float | None = None,
    ) -> DraftResult:
        """Request a free-form markdown draft for the given plan and constraints."""

        user_message = (
            f"Plan JSON:\n{plan_json.strip()}\n\n"
            f"Constraints:\n{constraints.strip()}\n\nProduce the draft in Markdown."
        )
        result = self._complete_with_fallbacks(
            operation="draft",
            system_prompt=DRAFT_SYSTEM_PROMPT,
            user_message=user_message,
            model=model or self.draft_model,
            temperature=temperature,
            text_format=None,
            on_chunk=on_chunk,
        )
        return DraftResult(
            text=result.content.strip(),
            usage=result.usage,
            cost=result.cost,
            model=result.model,
        )

    def _complete_with_fallbacks(  # noqa: PLR0913
        self,
        *,
        operation: str,
        system_prompt: str,
        user_message: str,
        model: str,
        temperature: float | None,
        text_format: dict[str, Any] | None,
        on_chunk: StreamHandler | None,
    ) -> CompletionResult:
        models = [model] if model == FALLBACK_MODEL else [model, FALLBACK_MODEL]
        for index, current_model in enumerate(models):
            payload = self._build_payload(
                model=current_model,
                system_prompt=system_prompt,
                user_message=user_message,
                temperature=temperature,
                text_format=text_format,
            )
            try:
                return self._complete_with_format_fallback(
                    payload=payload,
                    operation=operation,
                    on_chunk=on_chunk,
                )
            except ProviderRequestError as error:
                has_next = index < len(models) - 1
                if not has_next or not _mentions_missing_model(error):
                    raise
                logger.warning(
                    "%s model fallback: %s -> %s due to %s",
                    operation.capitalize(),
                    current_model,
                    models[index + 1],
                    error,
                )
        raise ProviderRequestError(f"Failed to run {operation} with the available models.")

    def _complete_with_format_fallback(
        self,
        *,
        payload: dict[str, Any],
        operation: str,
        on_chunk: StreamHandler | None,
    ) -> CompletionResult:
        try:
            return self._request(payload=payload, operation=operation, on_chunk=on_chunk)
        except ProviderRequestError as error:
            if "text" not in payload or not _mentions_unsupported_schema(error):
                raise
            logger.warning(
                "Retrying %s request with json_object format after: %s",
                operation,
                error,
            )
            fallback_payload = dict(payload)
            fallback_payload["text"] = {"format": {"type": "json_object"}}
            return self._request(payload=fallback_payload, operation=operation, on_chunk=on_chunk)

    def _build_payload(
        self,
        *,
        model: str,
        system_prompt: str,
        user_message: str,
        temperature: float | None,
        text_format: dict[str, Any] | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "input": [
                {"role": "system", "content": [{"type": "input_text", "text": system_prompt}]},
                {"role": "user", "content": [{"type": "input_text", "text": user_message}]},
            ],
            "max_output_tokens": self.max_output_tokens,
        }
        effective_temperature = temperature if temperature is not None else self.temperature
        if effective_temperature is not None:
            payload["temperature"] = effective_temperature
        if text_format is not None:
            payload["text"] = {"format": text_format}
        return payload

    def _request(
        self,
        *,
        payload: dict[str, Any],
        operation: str,
        on_chunk: StreamHandler | None,
    ) -> CompletionResult:
        """Send one logical call, retrying 429/5xx/transport failures with backoff."""

        request_payload = dict(payload)
        if on_chunk is not None:
            request_payload["stream"] = True
        emitted: list[str] = []

        def forward(chunk: str) -> None:
            emitted.append(chunk)
            if on_chunk is not None:
                on_chunk(chunk)

        delay_ms = INITIAL_BACKOFF_MS
        attempt = 0
        while True:
            attempt += 1
            logger.debug(
                "LLM request operation=%s attempt=%s model=%s stream=%s input_chars=%s",
                operation,
                attempt,
                payload.get("model"),
                on_chunk is not None,
                _input_chars(payload),
            )
            try:
                content, usage_raw, meta = self._send(
                    request_payload,
                    on_chunk=forward if on_chunk is not None else None,
                )
            except _HttpFailure as failure:
                # Chunks already handed to the caller cannot be taken back.
                if emitted:
                    logger.warning(
                        "LLM stream broke after %s chunk(s) operation=%s attempts=%s: %s",
                        len(emitted),
                        operation,
                        attempt,
                        failure.detail or "no detail provided",
                    )
                    raise ProviderRequestError(
                        "LLM stream interrupted after partial output: "
                        f"{failure.detail or 'no detail provided'}",
                        status_code=failure.status_code,
                        detail=failure.detail,
                        retryable=True,
                    ) from failure.__cause__
                if attempt >= self.max_attempts or not _should_retry(failure.status_code):
                    logger.warning(
                        "LLM request failed operation=%s status=%s attempts=%s: %s",
                        operation,
                        failure.status_code if failure.status_code is not None else "none",
                        attempt,
                        failure.detail or "no detail provided",
                    )
                    raise ProviderRequestError(
                        _failure_message(failure),
                        status_code=failure.status_code,
                        detail=failure.detail,
                        retryable=_should_retry(failure.status_code),
                    ) from failure.__cause__
                self._wait_with_jitter(delay_ms)
                delay_ms = min(delay_ms * 2, MAX_BACKOFF_MS)
                continue

            model = str(payload.get("model") or "unknown")
            usage = normalize_usage(usage_raw)
            cost = calculate_cost(
                model=model,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                tariffs=self.tariffs,
            )
            metadata = {
                "operation": operation,
                "response_id": meta.get("id"),
                "model": model,
                "model_requested": model,
                "model_reported": meta.get("model"),
                "attempts": attempt,
                "streamed": on_chunk is not None,
            }
            self._record_usage(operation=operation, usage=usage, cost=cost, metadata=metadata)
            return CompletionResult(
                content=content,
                usage=usage,
                cost=cost,
                model=model,
                response_id=meta.get("id"),
                attempts=attempt,
                metadata=metadata,
            )

    def _send(
        self,
        payload: dict[str, Any],
        *,
        on_chunk: StreamHandler | None,
    ) -> tuple[str, object, dict[str, Any]]:
        url = f"{self.base_url}/{ENDPOINT_RESPONSES}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            if on_chunk is None:
                response = self._http.post(url, json=payload, headers=headers)
                _raise_for_status(response)
                return _parse_json_response(response)
            with self._http.stream("POST", url, json=payload, headers=headers) as response:
                if response.status_code >= 400:
                    response.read()
                    _raise_for_status(response)
                return _consume_stream(response.iter_lines(), on_chunk=on_chunk)
        except httpx.TransportError as error:
            detail = str(error) or type(error).__name__
            raise _HttpFailure(status_code=None, detail=detail) from error

    def _record_usage(
        self,
        *,
        operation: str,
        usage: TokenUsage,
        cost: int,
        metadata: dict[str, Any],
    ) -> None:
        if self.usage_recorder is None:
            return
        try:
            self.usage_recorder.record(
                UsageEntry(
                    owner_id=self.owner_id,
                    provider=PROVIDER,
                    endpoint=f"/{ENDPOINT_RESPONSES}",
                    operation=operation,
                    usage=usage,
                    cost=cost,
                    metadata=metadata,
                ),
            )
        except Exception:  # noqa: BLE001
            logger.exception("Failed to record API usage for %s.", operation)

    def _wait_with_jitter(self, delay_ms: int) -> None:
        jitter = self._random.randint(0, int(delay_ms * JITTER_RATIO))
        self._sleep((delay_ms + jitter) / 1000)


class _HttpFailure(Exception):
    """Single-attempt HTTP failure, classified by the retry loop."""

    def __init__(self, *, status_code: int | None, detail: str | None) -> None:
        super().__init__(detail or "")
        self.status_code = status_code
        self.detail = detail


def _should_retry(status_code: int | None) -> bool:
    if status_code is None:
        return True
    if status_code == 429:  # noqa: PLR2004
        return True
    return 500 <= status_code < 600  # noqa: PLR2004


def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code < 400:  # noqa: PLR2004
        return
    raise _HttpFailure(status_code=response.status_code, detail=_extract_error_detail(response))


def _extract_error_detail(response: httpx.Response) -> str | None:
    body = response.text.strip()
    if not body:
        return None
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return body
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"].strip()
        if isinstance(data.get("message"), str):
            return data["message"].strip()
    return body


def _failure_message(failure: _HttpFailure) -> str:
    prefix = "LLM API request failed"
    if failure.status_code is not None:
        prefix += f" (status {failure.status_code})"
    return f"{prefix}: {failure.detail or 'no detail provided'}"


def _parse_json_response(response: httpx.Response) -> tuple[str, object, dict[str, Any]]:
    try:
        data = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as error:
        raise ProviderRequestError(
            "Unable to decode LLM API response.",
            status_code=response.status_code,
        ) from error
    if not isinstance(data, dict):
        raise ProviderRequestError(
            "LLM API response is not a JSON object.",
            status_code=response.status_code,
        )
    content = _extract_output_text(data.get("output"))
    if not content and isinstance(data.get("output_text"), str):
        content = data["output_text"]
    meta = {"id": data.get("id"), "model": data.get("model")}
    return content, data.get("usage"), meta


def _consume_stream(
    lines: Iterator[str],
    *,
    on_chunk: StreamHandler,
) -> tuple[str, object, dict[str, Any]]:
    parts: list[str] = []
    usage: object = None
    meta: dict[str, Any] = {"id": None, "model": None}
    for raw_line in lines:
        line = raw_line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if data == "[DONE]":
            break
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            continue
        if not isinstance(event, dict):
            continue

        event_type = str(event.get("type") or "")
        if event_type == "response.output_text.delta":
            chunk = str(event.get("delta") or "")
            if chunk:
                parts.append(chunk)
                on_chunk(chunk)
        elif event_type == "response.completed":
            response = event.get("response")
            if isinstance(response, dict):
                usage = response.get("usage")
                meta["id"] = response.get("id") or meta["id"]
                meta["model"] = response.get("model") or meta["model"]
                if not parts:
                    parts.append(_extract_output_text(response.get("output")))
            break
        elif event_type in {"response.error", "error"}:
            error = event.get("error")
            message = (
                error.get("message")
                if isinstance(error, dict) and isinstance(error.get("message"), str)
                else event.get("message") or "Unknown streaming error."
            )
            raise ProviderRequestError(f"LLM streaming error: {message}")
    return "".join(parts), usage, meta


def _extract_output_text(output: object) -> str:
    if not isinstance(output, list):
        return ""
    parts: list[str] = []
    for item in output:
        if not isinstance(item, dict):
            continue
        segments = item.get("content")
        if not isinstance(segments, list):
            continue
        for segment in segments:
            if not isinstance(segment, dict):
                continue
            if segment.get("type") in {"output_text", "text"} and isinstance(
                segment.get("text"),
                str,
            ):
                parts.append(segment["text"])
    return "".join(parts)


def _mentions_missing_model(error: ProviderRequestError) -> bool:
    if error.status_code is not None and error.status_code not in {400, 404}:
        return False
    text = f"{error} {error.detail or ''}".lower()
    if "model" not in text:
        return False
    return any(marker in text for marker in _MISSING_MODEL_MARKERS)


def _mentions_unsupported_schema(error: ProviderRequestError) -> bool:
    if error.status_code != 400:  # noqa: PLR2004
        return False
    text = f"{error} {error.detail or ''}".lower()
    return any(marker in text for marker in _SCHEMA_MARKERS)


def _input_chars(payload: dict[str, Any]) -> int:
    total = 0
    for message in payload.get("input", []):
        for part in message.get("content", []):
            total += len(str(part.get("text", "")))
    return total
