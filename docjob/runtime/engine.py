from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any

from docjob.config.load_config import EngineConfig
from docjob.runtime.events import EventBus, Subscription
from docjob.runtime.executor import HandlerRegistry, JobExecutor
from docjob.runtime.scheduler import JobScheduler
from docjob.storage.sqlite_store import Clock, JobRecord, SQLiteStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobStatusView:
    id: str
    type: str
    status: str
    progress: float
    result: Any
    error: str | None
    error_code: str | None
    created_at: float
    started_at: float | None
    completed_at: float | None

    @property
    def terminal(self) -> bool:
        return self.status in {"succeeded", "failed", "canceled"}

    @classmethod
    def from_record(cls, job: JobRecord) -> "JobStatusView":
        return cls(
            id=job.job_id,
            type=job.type,
            status=job.status,
            progress=job.progress,
            result=job.result,
            error=job.error,
            error_code=job.error_code,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.ended_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class JobEngine:
    """Owns the store, scheduler and executor for one process.

    Construct it explicitly and pass it around; there is no module-level instance.
    """

    def __init__(
        self,
        store: SQLiteStore,
        *,
        config: EngineConfig | None = None,
        registry: HandlerRegistry | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.config = config or EngineConfig()
        self.registry = registry or HandlerRegistry()
        self.bus = EventBus()
        self.executor = JobExecutor(
            store,
            self.registry,
            self.bus,
            shutdown_grace_s=self.config.shutdown_grace_s,
            clock=clock,
        )
        self.scheduler = JobScheduler(
            store,
            self.executor,
            max_concurrent=self.config.max_concurrent,
            poll_interval_s=self.config.poll_interval_s,
            stale_after_s=self.config.stale_after_s,
        )
        self._started = False

    def start(self, *, reconcile: bool = True) -> None:
        if self._started:
            return
        self.store.append_audit(
            "engine_started",
            entity="engine",
            entity_id="engine",
            detail={"max_concurrent": self.config.max_concurrent, "handlers": self.registry.types},
        )
        if reconcile:
            self.scheduler.reconcile()
        self.scheduler.start()
        self._started = True
        logger.info(
            "job engine started: max_concurrent=%d poll_interval_s=%.2f",
            self.config.max_concurrent,
            self.config.poll_interval_s,
        )

    async def shutdown(self, reason: str = "Service shutdown") -> None:
        await self.scheduler.stop()
        await self.executor.shutdown(reason)
        if self._started:
            self.store.append_audit("engine_shutdown", entity="engine", entity_id="engine", detail={"reason": reason})
        self._started = False
        logger.info("job engine stopped")

    # --- Caller operations
    def enqueue(self, job_type: str, payload: dict[str, Any] | None = None) -> str:
        job_type = str(job_type or "").strip()
        if not job_type:
            raise ValueError("job type must be non-empty.")
        job = self.store.insert(job_type, payload)
        self.store.append_audit("job_enqueued", entity_id=job.job_id, detail={"type": job_type})
        self.executor.publish(job.job_id, "enqueued", "queued", 0.0)
        logger.info("job enqueued: job_id=%s type=%s", job.job_id, job_type)
        if self.config.wake_on_enqueue:
            self.scheduler.wake()
        return job.job_id

    def get_status(self, job_id: str) -> JobStatusView:
        return JobStatusView.from_record(self.store.get(job_id))

    def cancel(self, job_id: str, reason: str = "Canceled by user request") -> JobStatusView:
        self.executor.cancel(job_id, reason=reason)
        return self.get_status(job_id)

    def get_stats(self) -> dict[str, int]:
        return self.store.count_by_status()

    def subscribe(self, job_id: str | None = None) -> Subscription:
        return self.bus.subscribe(job_id)

    async def wait_for(self, job_id: str, timeout: float | None = None) -> JobStatusView:
        """Wait until the job is terminal; raises asyncio.TimeoutError after `timeout` seconds."""
        with self.bus.subscribe(job_id) as sub:
            view = self.get_status(job_id)
            if view.terminal:
                return view

            async def _until_terminal() -> JobStatusView:
                async for event in sub:
                    if event.terminal:
                        break
                return self.get_status(job_id)

            return await asyncio.wait_for(_until_terminal(), timeout=timeout)

    def snapshot(self) -> dict[str, Any]:
        return {
            "started": self._started,
            "handlers": self.registry.types,
            "wake_on_enqueue": self.config.wake_on_enqueue,
            "shutdown_grace_s": self.config.shutdown_grace_s,
            "scheduler": self.scheduler.status_snapshot(),
            "stats": self.get_stats(),
        }
