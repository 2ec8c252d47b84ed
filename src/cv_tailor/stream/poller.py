"""Diffed, heartbeating progress stream derived from persisted generation state."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from cv_tailor.stream.repository import SnapshotRepository, StreamSnapshot

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset(
    {"completed", "succeeded", "success", "failed", "cancelled", "canceled"},
)
HEARTBEAT_CHUNK = ": ping\n\n"
NOT_FOUND_MESSAGE = "Generation not found."
TIMEOUT_MESSAGE = "Stream timeout."


def format_event(name: str, data: dict[str, Any]) -> str:
    encoded = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return f"event: {name}\ndata: {encoded}\n\n"


def is_terminal_status(status: str) -> bool:
    return status.lower() in TERMINAL_STATUSES


class GenerationStreamPoller:
    """Pull-based event source: each `next_chunk()` returns the next frame or None.

    The poller never talks to the worker. It re-reads the snapshot, emits the
    full state on the first call and only changed fields afterwards, sends a
    heartbeat comment when nothing changed for `heartbeat_interval_seconds`,
    and gives up after `timeout_seconds` of total streaming time.
    """

    def __init__(  # noqa: PLR0913
        self,
        repository: SnapshotRepository,
        generation_id: int,
        *,
        poll_interval_seconds: float = 1.0,
        heartbeat_interval_seconds: float = 15.0,
        timeout_seconds: float = 300.0,
        initial_snapshot: StreamSnapshot | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.generation_id = generation_id
        self.poll_interval_seconds = poll_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._sleep = sleep
        self._primed = initial_snapshot
        self._started_at = clock()
        self._last_heartbeat = self._started_at
        self._initialised = False
        self._finished = False
        self._last_status: str | None = None
        self._last_progress: int | None = None
        self._last_tokens: int | None = None
        self._last_cost: int | None = None
        self._last_error: str | None = None

    @property
    def finished(self) -> bool:
        return self._finished

    def next_chunk(self) -> str | None:
        if self._finished:
            return None

        while True:
            snapshot = self._primed or self.repository.fetch_snapshot(self.generation_id)
            self._primed = None

            if snapshot is None:
                self._finished = True
                return format_event("error", {"message": NOT_FOUND_MESSAGE})

            chunk = self._diff(snapshot)
            if chunk:
                if is_terminal_status(snapshot.status):
                    self._finished = True
                self._last_heartbeat = self._clock()
                return chunk

            now = self._clock()
            if now - self._last_heartbeat >= self.heartbeat_interval_seconds:
                self._last_heartbeat = now
                if is_terminal_status(snapshot.status):
                    self._finished = True
                return HEARTBEAT_CHUNK

            if now - self._started_at >= self.timeout_seconds:
                self._finished = True
                logger.info("Stream for generation %s timed out.", self.generation_id)
                return format_event("error", {"message": TIMEOUT_MESSAGE})

            self._sleep(self.poll_interval_seconds)

    def _diff(self, snapshot: StreamSnapshot) -> str:
        if not self._initialised:
            self._initialised = True
            chunks = [
                self._status_event(snapshot),
                self._progress_event(snapshot),
                self._tokens_event(snapshot),
                self._cost_event(snapshot),
            ]
            if snapshot.error_message:
                chunks.append(format_event("error", {"message": snapshot.error_message}))
            self._remember(snapshot)
            return "".join(chunks)

        chunks = []
        if snapshot.status != self._last_status:
            chunks.append(self._status_event(snapshot))
        if snapshot.progress_percent != self._last_progress:
            chunks.append(self._progress_event(snapshot))
        if snapshot.total_tokens != self._last_tokens:
            chunks.append(self._tokens_event(snapshot))
        if snapshot.cost != self._last_cost:
            chunks.append(self._cost_event(snapshot))
        if snapshot.error_message and snapshot.error_message != self._last_error:
            chunks.append(format_event("error", {"message": snapshot.error_message}))
        self._remember(snapshot)
        return "".join(chunks)

    def _remember(self, snapshot: StreamSnapshot) -> None:
        self._last_status = snapshot.status
        self._last_progress = snapshot.progress_percent
        self._last_tokens = snapshot.total_tokens
        self._last_cost = snapshot.cost
        if snapshot.error_message:
            self._last_error = snapshot.error_message

    @staticmethod
    def _status_event(snapshot: StreamSnapshot) -> str:
        return format_event(
            "status",
            {"value": snapshot.status, "updated_at": _timestamp(snapshot.updated_at)},
        )

    @staticmethod
    def _progress_event(snapshot: StreamSnapshot) -> str:
        return format_event("progress", {"percent": snapshot.progress_percent})

    @staticmethod
    def _tokens_event(snapshot: StreamSnapshot) -> str:
        return format_event(
            "tokens",
            {"total": snapshot.total_tokens, "updated_at": _timestamp(snapshot.latest_output_at)},
        )

    @staticmethod
    def _cost_event(snapshot: StreamSnapshot) -> str:
        return format_event(
            "cost",
            {"amount": snapshot.cost, "updated_at": _timestamp(snapshot.updated_at)},
        )


def _timestamp(value: datetime | None) -> str | None:
    return value.isoformat(timespec="seconds") if value is not None else None
