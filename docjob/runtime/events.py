from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any


logger = logging.getLogger(__name__)


TERMINAL_EVENT_KINDS = frozenset({"succeeded", "failed", "canceled"})


@dataclass(frozen=True)
class JobEvent:
    job_id: str
    kind: str
    status: str
    progress: float
    ts: float
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.kind in TERMINAL_EVENT_KINDS


class Subscription:
    """Async iterator over events for one job (or all jobs when `job_id` is None)."""

    def __init__(self, bus: "EventBus", job_id: str | None) -> None:
        self._bus = bus
        self.job_id = job_id
        self._queue: asyncio.Queue[JobEvent] = asyncio.Queue()
        self._closed = False

    def _offer(self, event: JobEvent) -> None:
        if self._closed:
            return
        if self.job_id is not None and event.job_id != self.job_id:
            return
        self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> JobEvent:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._bus._remove(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> JobEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.close()


class EventBus:
    """In-process fan-out of job events.

    Queues are unbounded and `publish` never awaits, so a slow subscriber
    cannot stall a state transition.
    """

    def __init__(self) -> None:
        self._subs: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

    def subscribe(self, job_id: str | None = None) -> Subscription:
        sub = Subscription(self, job_id)
        self._subs.append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        try:
            self._subs.remove(sub)
        except ValueError:
            pass

    def publish(self, event: JobEvent) -> None:
        for sub in list(self._subs):
            try:
                sub._offer(event)
            except Exception:
                logger.exception("event delivery failed: job_id=%s kind=%s", event.job_id, event.kind)
