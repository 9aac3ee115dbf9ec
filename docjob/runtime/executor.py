from __future__ import annotations

import asyncio
import logging
import traceback
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from docjob.errors import HandlerFailure, InvalidStateError, StaleTimeoutError
from docjob.runtime.events import EventBus, JobEvent
from docjob.storage.sqlite_store import Clock, JobRecord, SQLiteStore
from docjob.utils.cancel import CancellationToken, CancelledError


logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """What a handler sees of its job."""

    job_id: str
    job_type: str
    payload: dict[str, Any]
    cancel: CancellationToken
    report_progress: Callable[[float], None]
    logger: logging.Logger = field(default=logger)


Handler = Callable[[JobContext], Awaitable["dict[str, Any] | None"]]


class HandlerRegistry:
    def __init__(self, handlers: dict[str, Handler] | None = None) -> None:
        self._handlers: dict[str, Handler] = dict(handlers or {})

    def register(self, job_type: str, handler: Handler) -> None:
        job_type = str(job_type).strip()
        if not job_type:
            raise ValueError("job_type must be non-empty.")
        self._handlers[job_type] = handler

    def get(self, job_type: str) -> Handler | None:
        return self._handlers.get(job_type)

    @property
    def types(self) -> list[str]:
        return sorted(self._handlers)


@dataclass
class _LiveJob:
    token: CancellationToken
    task: asyncio.Task | None = None


class JobExecutor:
    """Runs handlers as asyncio tasks and owns every terminal status write.

    Only jobs dispatched by this executor count towards `running_count`; a
    `running` row left behind by another process is never counted.
    """

    def __init__(
        self,
        store: SQLiteStore,
        registry: HandlerRegistry,
        bus: EventBus,
        *,
        shutdown_grace_s: float = 5.0,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._clock: Clock = clock or store.clock
        self._registry = registry
        self._bus = bus
        self._shutdown_grace_s = float(shutdown_grace_s)
        self._live: dict[str, _LiveJob] = {}
        self._closed = False

    @property
    def running_count(self) -> int:
        return len(self._live)

    # --- Dispatch
    def dispatch(self, job: JobRecord) -> bool:
        """Move a queued job to running and start its handler; False if the job was no longer queued."""
        if self._closed:
            return False
        if not self._store.update_status(job.job_id, "running", progress=0.0, expect=("queued",)):
            logger.debug("dispatch skipped, job no longer queued: job_id=%s", job.job_id)
            return False

        live = _LiveJob(token=CancellationToken())
        self._live[job.job_id] = live
        self._store.append_audit("job_started", entity_id=job.job_id, detail={"type": job.type})
        self.publish(job.job_id, "started", "running", 0.0)
        logger.info("job started: job_id=%s type=%s", job.job_id, job.type)

        live.task = asyncio.create_task(self._run(job, live.token), name=f"docjob-{job.job_id}")
        return True

    async def _run(self, job: JobRecord, token: CancellationToken) -> None:
        try:
            handler = self._registry.get(job.type)
            if handler is None:
                self._finish(
                    job.job_id,
                    "failed",
                    error=f"Unknown job type: {job.type}",
                    error_code="unknown_job_type",
                )
                return

            ctx = JobContext(
                job_id=job.job_id,
                job_type=job.type,
                payload=dict(job.payload),
                cancel=token,
                report_progress=lambda pct: self._report_progress(job.job_id, pct),
                logger=logging.getLogger(f"docjob.jobs.{job.type}"),
            )
            try:
                result = await handler(ctx)
            except CancelledError as e:
                self._finish(job.job_id, "canceled", error=token.reason or str(e), error_code="canceled")
                return
            except asyncio.CancelledError:
                self._finish(job.job_id, "canceled", error=token.reason or "Job aborted", error_code="shutdown")
                raise
            except Exception as e:
                failure = HandlerFailure(job.type, e)
                logger.warning("job handler failed: job_id=%s type=%s error=%s", job.job_id, job.type, failure)
                self._finish(
                    job.job_id,
                    "failed",
                    error=str(failure),
                    error_code="handler_failure",
                    detail={"traceback": traceback.format_exc()},
                )
                return

            if token.cancelled:
                self._finish(job.job_id, "canceled", error=token.reason or "Job aborted", error_code="canceled")
                return
            self._finish(job.job_id, "succeeded", progress=100.0, result=result)
        except Exception as e:
            # Never let one job take the engine down.
            logger.exception("job task crashed: job_id=%s", job.job_id)
            try:
                self._finish(job.job_id, "failed", error=f"executor_unhandled_exception: {e}", error_code="handler_failure")
            except Exception:
                logger.exception("could not record failure: job_id=%s", job.job_id)
        finally:
            self._live.pop(job.job_id, None)

    def _report_progress(self, job_id: str, pct: float) -> None:
        if not self._store.update_progress(job_id, pct):
            return
        self.publish(job_id, "progress", "running", max(0.0, min(100.0, float(pct))))

    def _finish(
        self,
        job_id: str,
        status: str,
        *,
        progress: float | None = None,
        result: Any = None,
        error: str | None = None,
        error_code: str | None = None,
        expect: Iterable[str] = ("running",),
        detail: dict[str, Any] | None = None,
    ) -> bool:
        landed = self._store.update_status(
            job_id,
            status,
            progress=progress,
            result=result,
            error=error,
            error_code=error_code,
            expect=expect,
        )
        if not landed:
            logger.info("terminal write ignored, job already settled: job_id=%s status=%s", job_id, status)
            return False

        audit: dict[str, Any] = {}
        if error is not None:
            audit["error"] = error
        if error_code is not None:
            audit["error_code"] = error_code
        if detail:
            audit.update(detail)
        self._store.append_audit(f"job_{status}", entity_id=job_id, detail=audit)

        record = self._store.get(job_id)
        self.publish(job_id, status, status, record.progress, detail={k: v for k, v in audit.items() if k != "traceback"})
        logger.info("job %s: job_id=%s%s", status, job_id, f" error={error}" if error else "")
        return True

    def publish(
        self,
        job_id: str,
        kind: str,
        status: str,
        progress: float,
        *,
        detail: dict[str, Any] | None = None,
    ) -> None:
        self._bus.publish(
            JobEvent(
                job_id=job_id,
                kind=kind,
                status=status,
                progress=float(progress),
                ts=float(self._clock()),
                detail=dict(detail or {}),
            )
        )

    # --- Cancel
    def cancel(self, job_id: str, *, reason: str = "Canceled by user request") -> None:
        """Request cancellation.

        Queued jobs (and running rows with no live task) are written
        `canceled` right away. A live job only has its token signaled; its
        task records `canceled` once the handler stops.
        """
        job = self._store.get(job_id)
        if job.terminal:
            raise InvalidStateError(job_id, job.status)

        if job.status == "queued":
            if self._finish(job_id, "canceled", error=reason, error_code="canceled", expect=("queued",)):
                return
            job = self._store.get(job_id)
            if job.terminal:
                raise InvalidStateError(job_id, job.status)

        live = self._live.get(job_id)
        if live is not None:
            live.token.request_cancel(reason)
            self._store.append_audit("job_cancel_requested", entity_id=job_id, detail={"reason": reason})
            logger.info("cancel requested: job_id=%s", job_id)
            return

        if not self._finish(job_id, "canceled", error=reason, error_code="canceled", expect=("running",)):
            raise InvalidStateError(job_id, self._store.get(job_id).status)

    def settled_as_stale(self, job_ids: Iterable[str], reason: str) -> None:
        """Announce jobs failed by stale cleanup and stop any of them still running here.

        The slot is released right away; a handler that never returns must
        not hold capacity for a job the store already records as failed.
        """
        for job_id in job_ids:
            live = self._live.pop(job_id, None)
            if live is not None:
                live.token.request_cancel(reason)
                if live.task is not None:
                    live.task.cancel()
                logger.warning("stale job released: job_id=%s", job_id)
            record = self._store.find(job_id)
            progress = record.progress if record is not None else 0.0
            self.publish(job_id, "failed", "failed", progress, detail={"error": reason, "error_code": StaleTimeoutError.code})

    # --- Shutdown
    async def shutdown(self, reason: str = "Service shutdown", *, grace_s: float | None = None) -> None:
        self._closed = True
        live_items = list(self._live.items())
        for job_id, live in live_items:
            live.token.request_cancel(reason)
            self._finish(job_id, "canceled", error=reason, error_code="shutdown")

        tasks = [live.task for _, live in live_items if live.task is not None]
        if not tasks:
            return
        grace = self._shutdown_grace_s if grace_s is None else float(grace_s)
        _done, pending = await asyncio.wait(tasks, timeout=grace)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("cancelled %d job task(s) that ignored shutdown", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
