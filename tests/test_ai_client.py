from __future__ import annotations

import json
import random
from collections.abc import Callable, Iterator

import allure
import httpx
import pytest

from cv_tailor.ai.client import AIClient
from cv_tailor.ai.pricing import ModelTariff
from cv_tailor.ai.usage import UsageEntry
from cv_tailor.errors import LoggingError, MalformedResponseError, ProviderRequestError

pytestmark = [
    allure.epic("AI Client"),
    allure.feature("Retry, Streaming & Metering"),
]

_PLAN = {
    "summary": "Strong backend match with light frontend gaps.",
    "strengths": ["Python services", "SQL tuning"],
    "gaps": ["React"],
    "next_steps": [
        {
            "task": "Lead with API work",
            "rationale": "Matches the core requirement",
            "priority": "high",
            "estimated_minutes": 20,
        },
    ],
}


class _Ledger:
    def __init__(self, error: Exception | None = None) -> None:
        self.entries: list[UsageEntry] = []
        self.error = error

    def record(self, entry: UsageEntry) -> int:
        if self.error is not None:
            raise self.error
        self.entries.append(entry)
        return len(self.entries)


def _response_body(text: str, *, model: str = "gpt-4o-mini") -> dict[str, object]:
    return {
        "id": "resp_123",
        "model": model,
        "output": [
            {
                "type": "message",
                "role": "assistant",
                "content": [{"type": "output_text", "text": text}],
            },
        ],
        "usage": {"input_tokens": 1200, "output_tokens": 300, "total_tokens": 1500},
    }


def _client(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    ledger: _Ledger | None = None,
    sleeps: list[float] | None = None,
    **kwargs,
) -> AIClient:
    recorded = sleeps if sleeps is not None else []
    return AIClient(
        api_key="sk-test",
        base_url="https://llm.example.test/v1",
        owner_id=42,
        usage_recorder=ledger,
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=recorded.append,
        rng=random.Random(7),
        **kwargs,
    )


def test_plan_sends_structured_request_and_meters_usage() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=_response_body(json.dumps(_PLAN)))

    ledger = _Ledger()
    client = _client(
        handler,
        ledger=ledger,
        tariffs={"gpt-4o-mini": ModelTariff(prompt_per_1k=10, completion_per_1k=30)},
    )

    result = client.plan("Senior Python engineer", "# Jane Doe\nBackend developer")

    assert result.plan.summary == _PLAN["summary"]
    assert json.loads(result.plan_json) == _PLAN
    assert result.usage.total_tokens == 1500
    assert result.cost == 21
    assert result.model == "gpt-4o-mini"

    assert len(requests) == 1
    request = requests[0]
    assert request.url == "https://llm.example.test/v1/responses"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["model"] == "gpt-4o-mini"
    assert body["max_output_tokens"] == 1024
    assert body["text"]["format"]["type"] == "json_schema"
    assert body["text"]["format"]["strict"] is True
    assert [message["role"] for message in body["input"]] == ["system", "user"]
    assert "stream" not in body

    assert len(ledger.entries) == 1
    entry = ledger.entries[0]
    assert entry.owner_id == 42
    assert entry.operation == "plan"
    assert entry.provider == "openai"
    assert entry.endpoint == "/responses"
    assert entry.cost == 21
    assert entry.metadata["response_id"] == "resp_123"
    assert entry.metadata["attempts"] == 1


def test_retries_server_errors_then_succeeds_with_single_ledger_entry() -> None:
    statuses = [503, 503, 200]
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses[len(calls)]
        calls.append(status)
        if status != 200:
            return httpx.Response(status, json={"error": {"message": "overloaded"}})
        return httpx.Response(200, json=_response_body("## Draft"))

    ledger = _Ledger()
    sleeps: list[float] = []
    result = _client(handler, ledger=ledger, sleeps=sleeps).draft("{}", "Keep it short")

    assert result.text == "## Draft"
    assert calls == [503, 503, 200]
    assert len(ledger.entries) == 1
    assert ledger.entries[0].metadata["attempts"] == 3
    assert len(sleeps) == 2
    assert 0.2 <= sleeps[0] <= 0.24
    assert 0.4 <= sleeps[1] <= 0.48


def test_plan_retries_server_errors_and_meters_once() -> None:
    statuses = [503, 503, 200]
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses[len(calls)]
        calls.append(status)
        if status != 200:
            return httpx.Response(status, json={"error": {"message": "overloaded"}})
        return httpx.Response(200, json=_response_body(json.dumps(_PLAN)))

    ledger = _Ledger()
    sleeps: list[float] = []
    result = _client(handler, ledger=ledger, sleeps=sleeps).plan("job", "cv")

    assert result.plan.summary == _PLAN["summary"]
    assert len(calls) == 3
    assert len(sleeps) == 2
    assert len(ledger.entries) == 1
    entry = ledger.entries[0]
    assert entry.operation == "plan"
    assert entry.metadata["attempts"] == 3


def test_retry_waits_double_and_cap_with_bounded_jitter() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="internal error")

    sleeps: list[float] = []
    client = _client(handler, sleeps=sleeps, max_attempts=8)

    with pytest.raises(ProviderRequestError) as error_info:
        client.draft("{}", "constraints")

    nominal = [0.2, 0.4, 0.8, 1.6, 3.2, 4.0, 4.0]
    assert len(sleeps) == len(nominal)
    for waited, expected in zip(sleeps, nominal, strict=True):
        assert expected <= waited <= expected * 1.2 + 1e-9
    assert error_info.value.status_code == 500
    assert error_info.value.retryable is True


def test_rate_limit_exhausts_five_attempts() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(429, json={"error": {"message": "Rate limit reached"}})

    ledger = _Ledger()
    sleeps: list[float] = []
    with pytest.raises(ProviderRequestError) as error_info:
        _client(handler, ledger=ledger, sleeps=sleeps).draft("{}", "constraints")

    assert len(calls) == 5
    assert len(sleeps) == 4
    assert error_info.value.status_code == 429
    assert "Rate limit reached" in str(error_info.value)
    assert ledger.entries == []


def test_client_errors_are_not_retried() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, json={"error": {"message": "Invalid max_output_tokens"}})

    sleeps: list[float] = []
    with pytest.raises(ProviderRequestError) as error_info:
        _client(handler, sleeps=sleeps).draft("{}", "constraints")

    assert len(calls) == 1
    assert sleeps == []
    assert error_info.value.status_code == 400
    assert error_info.value.retryable is False
    assert error_info.value.detail == "Invalid max_output_tokens"


def test_transport_errors_are_retried() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=_response_body("Recovered draft"))

    sleeps: list[float] = []
    result = _client(handler, sleeps=sleeps).draft("{}", "constraints")

    assert result.text == "Recovered draft"
    assert len(calls) == 2
    assert len(sleeps) == 1


def test_plan_with_invalid_json_raises_malformed_response() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_response_body("Here is your plan: not json"))

    with pytest.raises(MalformedResponseError):
        _client(handler).plan("job", "cv")


def test_plan_with_wrong_shape_raises_malformed_response() -> None:
    broken = dict(_PLAN, next_steps=[])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_response_body(json.dumps(broken)))

    with pytest.raises(MalformedResponseError, match="next_steps"):
        _client(handler).plan("job", "cv")


def test_streaming_invokes_callback_per_delta_and_captures_usage() -> None:
    events = [
        {"type": "response.created", "response": {"id": "resp_stream"}},
        {"type": "response.output_text.delta", "delta": "## Summary\n"},
        {"type": "response.output_text.delta", "delta": "Tailored "},
        {"type": "response.output_text.delta", "delta": "draft."},
        {
            "type": "response.completed",
            "response": {
                "id": "resp_stream",
                "model": "gpt-4o-mini",
                "usage": {"input_tokens": 80, "output_tokens": 20, "total_tokens": 100},
            },
        },
    ]
    stream_body = "".join(f"data: {json.dumps(event)}\n\n" for event in events) + "data: [DONE]\n\n"
    bodies: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            content=stream_body.encode("utf-8"),
            headers={"Content-Type": "text/event-stream"},
        )

    chunks: list[str] = []
    ledger = _Ledger()
    result = _client(handler, ledger=ledger).draft("{}", "constraints", on_chunk=chunks.append)

    assert chunks == ["## Summary\n", "Tailored ", "draft."]
    assert result.text == "## Summary\nTailored draft."
    assert result.usage.total_tokens == 100
    assert bodies[0]["stream"] is True
    assert ledger.entries[0].metadata["streamed"] is True
    assert ledger.entries[0].metadata["response_id"] == "resp_stream"


def test_streaming_error_event_raises() -> None:
    stream_body = 'data: {"type": "error", "error": {"message": "context too long"}}\n\n'

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=stream_body.encode("utf-8"))

    with pytest.raises(ProviderRequestError, match="context too long"):
        _client(handler).draft("{}", "constraints", on_chunk=lambda chunk: None)


class _BrokenStream(httpx.SyncByteStream):
    """Yields the given frames, then drops the connection."""

    def __init__(self, frames: list[str]) -> None:
        self.frames = frames

    def __iter__(self) -> Iterator[bytes]:
        for frame in self.frames:
            yield frame.encode("utf-8")
        raise httpx.ReadError("connection reset by peer")


def _delta(text: str) -> str:
    return f"data: {json.dumps({'type': 'response.output_text.delta', 'delta': text})}\n\n"


def test_stream_broken_after_output_is_not_replayed() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            return httpx.Response(200, stream=_BrokenStream([_delta("Hello ")]))
        body = _delta("Hello ") + _delta("world") + "data: [DONE]\n\n"
        return httpx.Response(200, content=body.encode("utf-8"))

    chunks: list[str] = []
    ledger = _Ledger()
    sleeps: list[float] = []
    client = _client(handler, ledger=ledger, sleeps=sleeps)

    with pytest.raises(ProviderRequestError, match="partial output") as error_info:
        client.draft("{}", "constraints", on_chunk=chunks.append)

    assert chunks == ["Hello "]
    assert len(calls) == 1
    assert sleeps == []
    assert ledger.entries == []
    assert error_info.value.retryable is True
    assert error_info.value.status_code is None


def test_stream_broken_before_output_is_retried() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            return httpx.Response(200, stream=_BrokenStream([]))
        body = _delta("Hello ") + _delta("world") + "data: [DONE]\n\n"
        return httpx.Response(200, content=body.encode("utf-8"))

    chunks: list[str] = []
    result = _client(handler).draft("{}", "constraints", on_chunk=chunks.append)

    assert chunks == ["Hello ", "world"]
    assert result.text == "Hello world"
    assert len(calls) == 2


def test_ledger_failures_are_swallowed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_response_body("Draft body"))

    ledger = _Ledger(error=LoggingError("disk full"))
    result = _client(handler, ledger=ledger).draft("{}", "constraints")

    assert result.text == "Draft body"


def test_missing_model_falls_back_to_default_model() -> None:
    models: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        models.append(body["model"])
        if body["model"] == "gpt-5-enterprise":
            return httpx.Response(
                404,
                json={"error": {"message": "The model `gpt-5-enterprise` does not exist"}},
            )
        return httpx.Response(200, json=_response_body("Fallback draft"))

    result = _client(handler).draft("{}", "constraints", model="gpt-5-enterprise")

    assert models == ["gpt-5-enterprise", "gpt-4o-mini"]
    assert result.model == "gpt-4o-mini"
    assert result.text == "Fallback draft"


def test_unsupported_schema_falls_back_to_json_object_format() -> None:
    formats: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        formats.append(body["text"]["format"]["type"])
        if body["text"]["format"]["type"] == "json_schema":
            return httpx.Response(
                400,
                json={"error": {"message": "Invalid parameter: 'text.format' json_schema"}},
            )
        return httpx.Response(200, json=_response_body(json.dumps(_PLAN)))

    result = _client(handler).plan("job", "cv")

    assert formats == ["json_schema", "json_object"]
    assert result.plan.gaps == ["React"]


def test_temperature_is_sent_only_when_configured() -> None:
    bodies: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=_response_body("Draft"))

    client = _client(handler)
    client.draft("{}", "constraints")
    client.draft("{}", "constraints", temperature=0.3)

    assert "temperature" not in bodies[0]
    assert bodies[1]["temperature"] == 0.3
