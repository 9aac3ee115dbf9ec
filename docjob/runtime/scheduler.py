from __future__ import annotations

import asyncio
import logging
from typing import Any

from docjob.errors import StaleTimeoutError
from docjob.runtime.executor import JobExecutor
from docjob.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)


STALE_REASON = str(StaleTimeoutError())


class JobScheduler:
    """Fixed-interval poller that promotes queued jobs, oldest first, up to the concurrency cap."""

    def __init__(
        self,
        store: SQLiteStore,
        executor: JobExecutor,
        *,
        max_concurrent: int = 3,
        poll_interval_s: float = 2.0,
        stale_after_s: float = 24 * 60 * 60,
    ) -> None:
        if int(max_concurrent) < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._store = store
        self._executor = executor
        self.max_concurrent = int(max_concurrent)
        self.poll_interval_s = float(poll_interval_s)
        self.stale_after_s = float(stale_after_s)
        self._task: asyncio.Task | None = None
        self._wake = asyncio.Event()
        self._ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "max_concurrent": self.max_concurrent,
            "poll_interval_s": self.poll_interval_s,
            "stale_after_s": self.stale_after_s,
            "ticks": self._ticks,
            "live_jobs": self._executor.running_count,
        }

    def reconcile(self) -> list[str]:
        """Fail `running` jobs that have not been updated within `stale_after_s`."""
        ids = self._store.fail_stale_running(older_than_s=self.stale_after_s, reason=STALE_REASON)
        if ids:
            logger.warning("failed %d stale running job(s): %s", len(ids), ", ".join(ids))
            self._executor.settled_as_stale(ids, STALE_REASON)
        return ids

    def tick(self) -> list[str]:
        self._ticks += 1
        self.reconcile()

        capacity = self.max_concurrent - self._executor.running_count
        if capacity <= 0:
            return []

        dispatched: list[str] = []
        for job in self._store.list_by_status("queued", limit=capacity):
            if self._executor.dispatch(job):
                dispatched.append(job.job_id)
        if dispatched:
            logger.debug("dispatched %d job(s): %s", len(dispatched), ", ".join(dispatched))
        return dispatched

    def wake(self) -> None:
        self._wake.set()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="docjob-scheduler")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            try:
                self.tick()
            except Exception:
                # A failed tick must not stop polling.
                logger.exception("scheduler tick failed")
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval_s)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
