"""Runtime configuration for the tailoring worker, AI client and stream."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_MODEL = "gpt-4o-mini"


@dataclass(slots=True)
class AiSettings:
    """LLM provider settings."""

    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    plan_model: str = DEFAULT_MODEL
    draft_model: str = DEFAULT_MODEL
    max_output_tokens: int = 1024
    tariff_json: str = ""
    timeout_seconds: float = 60.0
    temperature: float | None = None


@dataclass(slots=True)
class WorkerSettings:
    """Queue worker settings."""

    worker_id: str = "worker"
    max_attempts: int = 5
    retry_base_seconds: int = 5
    retry_max_seconds: int = 300
    idle_backoff_min_seconds: float = 1.0
    idle_backoff_max_seconds: float = 30.0
    stale_reservation_seconds: float = 1800.0


@dataclass(slots=True)
class StreamSettings:
    """Live progress stream settings."""

    poll_interval_seconds: float = 1.0
    heartbeat_interval_seconds: float = 15.0
    timeout_seconds: float = 300.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".cv_tailor.db")
    ai: AiSettings = field(default_factory=AiSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    stream: StreamSettings = field(default_factory=StreamSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("CV_TAILOR_DB_PATH", ".cv_tailor.db")),
            ai=AiSettings(
                api_key=os.getenv("OPENAI_API_KEY", "").strip(),
                base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").strip(),
                plan_model=os.getenv("OPENAI_MODEL_PLAN", DEFAULT_MODEL).strip() or DEFAULT_MODEL,
                draft_model=os.getenv("OPENAI_MODEL_DRAFT", DEFAULT_MODEL).strip()
                or DEFAULT_MODEL,
                max_output_tokens=int(os.getenv("OPENAI_MAX_TOKENS", "1024")),
                tariff_json=os.getenv("OPENAI_TARIFF_JSON", ""),
                timeout_seconds=float(os.getenv("CV_TAILOR_AI_TIMEOUT_SECONDS", "60")),
                temperature=_env_optional_float("CV_TAILOR_AI_TEMPERATURE"),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("CV_TAILOR_WORKER_ID", "").strip() or _default_worker_id(),
                max_attempts=int(os.getenv("CV_TAILOR_MAX_ATTEMPTS", "5")),
                retry_base_seconds=int(os.getenv("CV_TAILOR_RETRY_BASE_SECONDS", "5")),
                retry_max_seconds=int(os.getenv("CV_TAILOR_RETRY_MAX_SECONDS", "300")),
                idle_backoff_min_seconds=float(
                    os.getenv("CV_TAILOR_IDLE_BACKOFF_MIN_SECONDS", "1"),
                ),
                idle_backoff_max_seconds=float(
                    os.getenv("CV_TAILOR_IDLE_BACKOFF_MAX_SECONDS", "30"),
                ),
                stale_reservation_seconds=float(
                    os.getenv("CV_TAILOR_WORKER_STALE_SECONDS", "1800"),
                ),
            ),
            stream=StreamSettings(
                poll_interval_seconds=float(os.getenv("CV_TAILOR_STREAM_POLL_SECONDS", "1")),
                heartbeat_interval_seconds=float(
                    os.getenv("CV_TAILOR_STREAM_HEARTBEAT_SECONDS", "15"),
                ),
                timeout_seconds=float(os.getenv("CV_TAILOR_STREAM_TIMEOUT_SECONDS", "300")),
            ),
            log_level=os.getenv("CV_TAILOR_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if the worker cannot reach the LLM API."""

        if not self.ai.api_key:
            raise ValueError("OPENAI_API_KEY is required to run the worker.")
        parsed = urlparse(self.ai.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                f"Invalid OPENAI_BASE_URL: {self.ai.base_url!r}. "
                "Expected an absolute URL with http:// or https:// scheme.",
            )
        if self.ai.max_output_tokens <= 0:
            raise ValueError("OPENAI_MAX_TOKENS must be > 0.")
        if self.ai.timeout_seconds <= 0:
            raise ValueError("CV_TAILOR_AI_TIMEOUT_SECONDS must be > 0.")
        if self.worker.max_attempts <= 0:
            raise ValueError("CV_TAILOR_MAX_ATTEMPTS must be > 0.")
        if self.worker.retry_base_seconds <= 0 or self.worker.retry_max_seconds <= 0:
            raise ValueError("Retry delays must be > 0.")
        if (
            self.worker.idle_backoff_min_seconds <= 0
            or self.worker.idle_backoff_max_seconds < self.worker.idle_backoff_min_seconds
        ):
            raise ValueError(
                "CV_TAILOR_IDLE_BACKOFF_MIN_SECONDS must be > 0 and not above the maximum.",
            )
        if self.worker.stale_reservation_seconds <= 0:
            raise ValueError("CV_TAILOR_WORKER_STALE_SECONDS must be > 0.")

    def validate_for_stream(self) -> None:
        """Raise configuration error for non-positive stream intervals."""

        if self.stream.poll_interval_seconds <= 0:
            raise ValueError("CV_TAILOR_STREAM_POLL_SECONDS must be > 0.")
        if self.stream.heartbeat_interval_seconds <= 0:
            raise ValueError("CV_TAILOR_STREAM_HEARTBEAT_SECONDS must be > 0.")
        if self.stream.timeout_seconds <= 0:
            raise ValueError("CV_TAILOR_STREAM_TIMEOUT_SECONDS must be > 0.")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid float value for {name}: {value!r}") from error
