from __future__ import annotations

import asyncio

import pytest

from docjob.config.load_config import EngineConfig
from docjob.errors import InvalidStateError, NotFoundError
from docjob.runtime.engine import JobEngine
from docjob.runtime.executor import HandlerRegistry, JobContext
from docjob.storage.sqlite_store import SQLiteStore


pytestmark = pytest.mark.asyncio


class Gate:
    """Handler that blocks until released; ignores its cancellation token."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.seen: list[str] = []

    async def __call__(self, ctx: JobContext) -> dict:
        self.seen.append(ctx.job_id)
        self.started.set()
        await self.release.wait()
        return {"job_id": ctx.job_id}


async def cooperative(ctx: JobContext) -> dict:
    await ctx.cancel.sleep(3600)
    return {}


async def stubborn(ctx: JobContext) -> dict:
    await asyncio.sleep(3600)
    return {}


async def _settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def make_engine(clock):
    stores: list[SQLiteStore] = []

    def _make(handlers: dict | None = None, **overrides) -> JobEngine:
        store = SQLiteStore(":memory:", clock=clock)
        stores.append(store)
        cfg = EngineConfig(**{"poll_interval_s": 0.01, "shutdown_grace_s": 0.2, **overrides})
        return JobEngine(store, config=cfg, registry=HandlerRegistry(handlers or {}))

    yield _make
    for s in stores:
        s.close()


async def test_job_runs_queued_running_succeeded(make_engine) -> None:
    gate = Gate()
    engine = make_engine({"echo": gate})
    try:
        job_id = engine.enqueue("echo", {"x": 1})
        assert engine.get_status(job_id).status == "queued"

        assert engine.scheduler.tick() == [job_id]
        running = engine.get_status(job_id)
        assert running.status == "running"
        assert running.started_at is not None

        gate.release.set()
        done = await engine.wait_for(job_id, timeout=1)
        assert done.status == "succeeded"
        assert done.progress == 100.0
        assert done.result == {"job_id": job_id}
        assert done.error is None
        assert done.completed_at is not None

        actions = [a["action"] for a in engine.store.list_audit(job_id)]
        assert actions == ["job_enqueued", "job_started", "job_succeeded"]
    finally:
        await engine.shutdown()


async def test_running_jobs_never_exceed_cap_and_dispatch_is_fifo(make_engine) -> None:
    gate = Gate()
    engine = make_engine({"echo": gate}, max_concurrent=2)
    try:
        ids = [engine.enqueue("echo", {"i": i}) for i in range(5)]

        assert engine.scheduler.tick() == ids[:2]
        assert engine.get_stats()["running"] == 2
        assert engine.scheduler.tick() == []
        assert engine.get_stats()["running"] == 2

        gate.release.set()
        await engine.wait_for(ids[0], timeout=1)
        await engine.wait_for(ids[1], timeout=1)

        assert engine.scheduler.tick() == ids[2:4]
        await engine.wait_for(ids[3], timeout=1)
        assert engine.scheduler.tick() == ids[4:]
        await engine.wait_for(ids[4], timeout=1)

        await _settle()
        assert gate.seen == ids
        assert engine.get_stats()["succeeded"] == 5
    finally:
        await engine.shutdown()


async def test_handler_error_fails_job_and_keeps_progress(make_engine) -> None:
    async def boom(ctx: JobContext) -> dict:
        ctx.report_progress(40)
        raise RuntimeError("renderer exploded")

    engine = make_engine({"boom": boom})
    try:
        job_id = engine.enqueue("boom", {})
        engine.scheduler.tick()
        view = await engine.wait_for(job_id, timeout=1)
        assert view.status == "failed"
        assert view.error == "renderer exploded"
        assert view.error_code == "handler_failure"
        assert view.progress == 40.0

        failed = engine.store.list_audit(job_id, action="job_failed")
        assert "Traceback" in failed[0]["detail"]["traceback"]
    finally:
        await engine.shutdown()


async def test_unknown_type_is_accepted_then_fails(make_engine) -> None:
    engine = make_engine({})
    try:
        job_id = engine.enqueue("no_such_type", {})
        assert engine.get_status(job_id).status == "queued"
        engine.scheduler.tick()
        view = await engine.wait_for(job_id, timeout=1)
        assert view.status == "failed"
        assert view.error_code == "unknown_job_type"
    finally:
        await engine.shutdown()


async def test_enqueue_rejects_empty_type(make_engine) -> None:
    engine = make_engine({})
    with pytest.raises(ValueError):
        engine.enqueue("  ", {})


async def test_cancel_queued_job_is_immediate(make_engine) -> None:
    gate = Gate()
    engine = make_engine({"echo": gate})
    try:
        job_id = engine.enqueue("echo", {})
        view = engine.cancel(job_id)
        assert view.status == "canceled"
        assert view.error == "Canceled by user request"
        assert view.error_code == "canceled"

        assert engine.scheduler.tick() == []
        assert gate.seen == []

        with pytest.raises(InvalidStateError) as exc:
            engine.cancel(job_id)
        assert str(exc.value) == "Cannot cancel job in canceled state"
    finally:
        await engine.shutdown()


async def test_cancel_running_job_is_observed_by_handler(make_engine) -> None:
    engine = make_engine({"slow": cooperative})
    try:
        job_id = engine.enqueue("slow", {})
        engine.scheduler.tick()
        await _settle()

        # The handler has not observed the token yet.
        assert engine.cancel(job_id).status == "running"

        view = await engine.wait_for(job_id, timeout=1)
        assert view.status == "canceled"
        assert view.error == "Canceled by user request"
        assert view.error_code == "canceled"
        assert engine.executor.running_count == 0

        actions = [a["action"] for a in engine.store.list_audit(job_id)]
        assert actions[-2:] == ["job_cancel_requested", "job_canceled"]
    finally:
        await engine.shutdown()


async def test_handler_returning_after_cancel_is_recorded_canceled(make_engine) -> None:
    gate = Gate()
    engine = make_engine({"echo": gate})
    try:
        job_id = engine.enqueue("echo", {})
        engine.scheduler.tick()
        engine.cancel(job_id, reason="user changed their mind")
        gate.release.set()

        view = await engine.wait_for(job_id, timeout=1)
        assert view.status == "canceled"
        assert view.error == "user changed their mind"
        assert view.result is None
    finally:
        await engine.shutdown()


async def test_cancel_after_success_is_rejected_and_state_kept(make_engine) -> None:
    gate = Gate()
    engine = make_engine({"echo": gate})
    try:
        job_id = engine.enqueue("echo", {})
        engine.scheduler.tick()
        gate.release.set()
        await engine.wait_for(job_id, timeout=1)

        with pytest.raises(InvalidStateError):
            engine.cancel(job_id)
        assert engine.get_status(job_id).status == "succeeded"
    finally:
        await engine.shutdown()


async def test_unknown_job_id(make_engine) -> None:
    engine = make_engine({})
    with pytest.raises(NotFoundError):
        engine.get_status("job_missing")
    with pytest.raises(NotFoundError):
        engine.cancel("job_missing")


async def test_stale_running_job_fails_on_next_tick(make_engine, clock) -> None:
    engine = make_engine({"slow": cooperative}, stale_after_s=60)
    try:
        job_id = engine.enqueue("slow", {})
        engine.scheduler.tick()
        await _settle()

        clock.advance(61)
        engine.scheduler.tick()
        view = await engine.wait_for(job_id, timeout=1)
        assert view.status == "failed"
        assert view.error == "Job timed out (stale cleanup)"
        assert view.error_code == "stale_timeout"

        # The handler was told to stop; its own late write must not win.
        await _settle()
        assert engine.executor.running_count == 0
        assert engine.get_status(job_id).status == "failed"
    finally:
        await engine.shutdown()


async def test_stale_job_that_never_returns_frees_its_slot(make_engine, clock) -> None:
    async def hung(ctx: JobContext) -> dict:
        await asyncio.Event().wait()
        return {}

    gate = Gate()
    engine = make_engine({"hung": hung, "echo": gate}, max_concurrent=1, stale_after_s=60)
    try:
        stuck = engine.enqueue("hung", {})
        assert engine.scheduler.tick() == [stuck]
        await _settle()
        next_id = engine.enqueue("echo", {})
        assert engine.scheduler.tick() == []

        clock.advance(61)
        assert engine.scheduler.tick() == [next_id]
        assert engine.get_status(stuck).status == "failed"
        assert engine.executor.running_count == 1

        gate.release.set()
        assert (await engine.wait_for(next_id, timeout=1)).status == "succeeded"
        await _settle()
        assert engine.get_status(stuck).error_code == "stale_timeout"
        assert engine.executor.running_count == 0
    finally:
        await engine.shutdown()


async def test_orphaned_running_row_does_not_use_capacity(make_engine) -> None:
    """A `running` row with no live task here is not counted against the cap.

    Capacity tracks tasks this executor owns, so the store can briefly hold
    more `running` rows than `max_concurrent` while such an orphan exists.
    Staleness reconciliation, or an explicit cancel, settles the orphan.
    """
    gate = Gate()
    engine = make_engine({"echo": gate}, max_concurrent=1)
    try:
        orphan = engine.store.insert("echo", {})
        engine.store.update_status(orphan.job_id, "running")

        job_id = engine.enqueue("echo", {})
        assert engine.scheduler.tick() == [job_id]

        view = engine.cancel(orphan.job_id)
        assert view.status == "canceled"

        gate.release.set()
        await engine.wait_for(job_id, timeout=1)
    finally:
        await engine.shutdown()


async def test_shutdown_cancels_running_jobs(make_engine) -> None:
    engine = make_engine({"slow": cooperative, "stuck": stubborn})
    polite = engine.enqueue("slow", {})
    rude = engine.enqueue("stuck", {})
    engine.scheduler.tick()
    await _settle()
    assert engine.executor.running_count == 2

    await engine.shutdown()

    for job_id in (polite, rude):
        view = engine.get_status(job_id)
        assert view.status == "canceled"
        assert view.error == "Service shutdown"
        assert view.error_code == "shutdown"
    assert engine.executor.running_count == 0

    # No dispatch after shutdown.
    late = engine.enqueue("slow", {})
    assert engine.scheduler.tick() == []
    assert engine.get_status(late).status == "queued"


async def test_events_follow_the_status_graph(make_engine) -> None:
    async def steps(ctx: JobContext) -> dict:
        ctx.report_progress(50)
        return {"done": True}

    engine = make_engine({"steps": steps})
    try:
        with engine.subscribe() as sub:
            job_id = engine.enqueue("steps", {})
            engine.scheduler.tick()
            kinds = []
            while True:
                event = await sub.get(timeout=1)
                assert event.job_id == job_id
                kinds.append(event.kind)
                if event.terminal:
                    break
        assert kinds == ["enqueued", "started", "progress", "succeeded"]
        assert engine.bus.subscriber_count == 0
    finally:
        await engine.shutdown()


async def test_wait_for_times_out(make_engine) -> None:
    engine = make_engine({})
    job_id = engine.enqueue("anything", {})
    with pytest.raises(asyncio.TimeoutError):
        await engine.wait_for(job_id, timeout=0.05)
    assert engine.bus.subscriber_count == 0


async def test_started_engine_polls_and_runs_jobs(make_engine) -> None:
    async def quick(ctx: JobContext) -> dict:
        return {"payload": ctx.payload}

    engine = make_engine({"quick": quick})
    engine.start()
    try:
        job_id = engine.enqueue("quick", {"a": 1})
        view = await engine.wait_for(job_id, timeout=2)
        assert view.status == "succeeded"
        assert view.result == {"payload": {"a": 1}}
        assert engine.scheduler.running
    finally:
        await engine.shutdown()
    assert not engine.scheduler.running

    engine_actions = [a["action"] for a in engine.store.list_audit("engine")]
    assert engine_actions == ["engine_started", "engine_shutdown"]


async def test_wake_on_enqueue_skips_the_poll_wait(make_engine) -> None:
    async def quick(ctx: JobContext) -> dict:
        return {}

    engine = make_engine({"quick": quick}, poll_interval_s=3600, wake_on_enqueue=True)
    engine.start()
    try:
        await _settle()
        job_id = engine.enqueue("quick", {})
        view = await engine.wait_for(job_id, timeout=1)
        assert view.status == "succeeded"
    finally:
        await engine.shutdown()
