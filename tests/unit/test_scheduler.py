# ============================================================================
# tests/unit/test_scheduler.py
# JobScheduler admission control, cancellation, removal and shutdown
# ============================================================================

import asyncio
from typing import Dict, List

import pytest

from compatscan.cortex.events import DoneEvent, EventBus, RemovedEvent
from compatscan.data.db import Database
from compatscan.data.job_store import JobStore
from compatscan.engine.models import Job, JobKind, JobStatus
from compatscan.engine.scheduler import JobScheduler
from compatscan.errors import CancellationSignal


class GateExecutor:
    """Stand-in pipeline: holds each job open until its gate is released."""

    def __init__(self, store: JobStore, bus: EventBus, auto_release: bool = False):
        self.store = store
        self.bus = bus
        self.auto_release = auto_release
        self.gates: Dict[str, asyncio.Event] = {}
        self.started: List[str] = []
        self.max_processing = 0

    def gate(self, job_id: str) -> asyncio.Event:
        return self.gates.setdefault(job_id, asyncio.Event())

    def release(self, job_id: str) -> None:
        self.gate(job_id).set()

    async def run(self, job: Job, token) -> None:
        job.transition(JobStatus.PROCESSING)
        self.store.save(job)
        self.started.append(job.id)
        processing = sum(1 for j in self.store.all() if j.status == JobStatus.PROCESSING)
        self.max_processing = max(self.max_processing, processing)
        gate = self.gate(job.id)
        if self.auto_release:
            gate.set()
        try:
            while not gate.is_set():
                token.raise_if_requested()
                await asyncio.sleep(0.005)
            token.raise_if_requested()
        except CancellationSignal as sig:
            job.result = {"cancelled": True, "reason": sig.reason}
            job.transition(JobStatus.CANCELLED)
        else:
            job.result = {"ok": True}
            job.transition(JobStatus.DONE)
        self.store.save(job)
        if self.store.peek(job.id) is job:
            self.bus.emit(DoneEvent(job_id=job.id, result=job.result))


class ExplodingExecutor:
    async def run(self, job, token):
        raise RuntimeError("pipeline bug")


def _scheduler(max_concurrent=2, auto_release=False, store=None):
    store = store if store is not None else JobStore()
    bus = EventBus()
    executor = GateExecutor(store, bus, auto_release=auto_release)
    return JobScheduler(store, bus, executor, max_concurrent=max_concurrent), executor


async def _until(predicate, timeout=2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout)


@pytest.mark.anyio
async def test_create_job_returns_immediately_queued():
    scheduler, executor = _scheduler(max_concurrent=1)
    job = scheduler.create_job({"local_path": "/tmp"})
    assert job.status == JobStatus.QUEUED
    assert job.progress == 0
    assert job.kind == JobKind.SCAN
    assert scheduler.active_ids == [job.id]
    assert executor.started == []  # task created, not yet run
    executor.release(job.id)
    await scheduler.wait_idle()
    assert job.status == JobStatus.DONE


@pytest.mark.anyio
async def test_single_slot_runs_three_jobs_one_at_a_time():
    scheduler, executor = _scheduler(max_concurrent=1, auto_release=True)
    jobs = [scheduler.create_job({"n": i}) for i in range(3)]
    assert len(scheduler.active_ids) == 1
    assert len(scheduler.pending_ids) == 2

    await scheduler.wait_idle()

    assert scheduler.peak_active == 1
    assert executor.max_processing == 1
    assert executor.started == [j.id for j in jobs]
    assert all(j.status == JobStatus.DONE for j in jobs)


@pytest.mark.anyio
async def test_active_set_never_exceeds_limit():
    scheduler, executor = _scheduler(max_concurrent=2)
    jobs = [scheduler.create_job({"n": i}) for i in range(5)]
    await _until(lambda: len(executor.started) == 2)
    assert len(scheduler.active_ids) == 2

    for job in jobs:
        executor.release(job.id)
    await scheduler.wait_idle()

    assert scheduler.peak_active == 2
    assert executor.max_processing <= 2
    assert all(j.status == JobStatus.DONE for j in jobs)


@pytest.mark.anyio
async def test_invalid_concurrency_falls_back_to_two():
    scheduler, _ = _scheduler(max_concurrent="nonsense")
    assert scheduler.max_concurrent == 2
    scheduler, _ = _scheduler(max_concurrent=0)
    assert scheduler.max_concurrent == 2


@pytest.mark.anyio
async def test_cancel_pending_job_is_synchronous():
    scheduler, executor = _scheduler(max_concurrent=1)
    events = []
    scheduler.bus.subscribe(events.append)
    first = scheduler.create_job({"n": 1})
    second = scheduler.create_job({"n": 2})

    outcome = await scheduler.cancel_job(second.id)

    assert outcome.found and outcome.changed
    assert outcome.status == "cancelled"
    assert second.status == JobStatus.CANCELLED
    assert second.result == {"cancelled": True, "reason": "user"}
    assert second.id not in scheduler.pending_ids
    assert [e.job_id for e in events if isinstance(e, DoneEvent)] == [second.id]

    executor.release(first.id)
    await scheduler.wait_idle()
    assert second.id not in executor.started


@pytest.mark.anyio
async def test_cancel_active_job_unwinds_at_next_checkpoint():
    scheduler, executor = _scheduler(max_concurrent=1)
    job = scheduler.create_job({})
    await _until(lambda: job.status == JobStatus.PROCESSING)

    outcome = await scheduler.cancel_job(job.id)
    assert outcome.changed
    assert job.cancel_requested
    assert job.cancel_reason == "user"

    await scheduler.wait(job.id)
    assert job.status == JobStatus.CANCELLED
    assert job.result["cancelled"] is True
    assert job.result["reason"] == "user"


@pytest.mark.anyio
async def test_cancel_unknown_and_terminal_jobs():
    scheduler, executor = _scheduler(auto_release=True)
    outcome = await scheduler.cancel_job("missing")
    assert (outcome.found, outcome.changed, outcome.status) == (False, False, "not_found")

    job = scheduler.create_job({})
    await scheduler.wait_idle()
    outcome = await scheduler.cancel_job(job.id)
    assert outcome.found and not outcome.changed
    assert outcome.status == "done"


@pytest.mark.anyio
async def test_remove_running_job_keeps_slot_until_unwound():
    scheduler, executor = _scheduler(max_concurrent=1)
    events = []
    scheduler.bus.subscribe(events.append)
    running = scheduler.create_job({})
    waiting = scheduler.create_job({})
    await _until(lambda: running.status == JobStatus.PROCESSING)

    assert scheduler.remove_job(running.id) is True
    assert scheduler.store.peek(running.id) is None
    assert isinstance(events[-1], RemovedEvent)
    # Slot still held by the unwinding task, nothing over-admitted
    assert scheduler.active_ids == [running.id]
    assert waiting.status == JobStatus.QUEUED

    await _until(lambda: waiting.status == JobStatus.PROCESSING)
    assert running.cancel_reason == "removed"
    # Removed jobs emit no terminal event
    assert not any(isinstance(e, DoneEvent) and e.job_id == running.id for e in events)

    executor.release(waiting.id)
    await scheduler.wait_idle()
    assert scheduler.peak_active == 1


@pytest.mark.anyio
async def test_remove_pending_and_unknown_jobs():
    scheduler, executor = _scheduler(max_concurrent=1)
    first = scheduler.create_job({})
    second = scheduler.create_job({})
    assert scheduler.remove_job(second.id)
    assert scheduler.pending_ids == []
    assert scheduler.remove_job("missing") is False

    executor.release(first.id)
    await scheduler.wait_idle()
    assert second.id not in executor.started


@pytest.mark.anyio
async def test_shutdown_cancels_running_and_leaves_pending_queued():
    scheduler, executor = _scheduler(max_concurrent=1)
    running = scheduler.create_job({})
    pending = scheduler.create_job({})
    await _until(lambda: running.status == JobStatus.PROCESSING)

    await scheduler.shutdown(cancel_running=True)

    assert scheduler.active_ids == []
    assert running.status == JobStatus.CANCELLED
    assert running.result["reason"] == "shutdown"
    assert pending.status == JobStatus.QUEUED
    assert pending.id not in executor.started

    # Draining: new work is accepted but not dispatched
    late = scheduler.create_job({})
    assert late.id in scheduler.pending_ids
    assert scheduler.active_ids == []


@pytest.mark.anyio
async def test_shutdown_without_cancel_waits_for_running_jobs():
    scheduler, executor = _scheduler(max_concurrent=2)
    job = scheduler.create_job({})
    await _until(lambda: job.status == JobStatus.PROCESSING)

    async def release_later():
        await asyncio.sleep(0.05)
        executor.release(job.id)

    asyncio.create_task(release_later())
    await scheduler.shutdown()
    assert job.status == JobStatus.DONE


@pytest.mark.anyio
async def test_escaped_exception_marks_job_failed_and_scheduler_continues():
    store = JobStore()
    bus = EventBus()
    events = []
    bus.subscribe(events.append)
    scheduler = JobScheduler(store, bus, ExplodingExecutor(), max_concurrent=1)

    a = scheduler.create_job({})
    b = scheduler.create_job({})
    await scheduler.wait_idle()

    for job in (a, b):
        assert job.status == JobStatus.FAILED
        assert job.result["error"] == "pipeline bug"
        assert job.result["code"] == "JOB_003"
    assert [e.kind for e in events if e.job_id == a.id] == ["failed", "done"]


@pytest.mark.anyio
async def test_start_reenqueues_interrupted_jobs(tmp_path):
    db_path = tmp_path / "jobs.db"
    seed = JobStore(Database(db_path))
    await seed.open()
    interrupted = Job(payload={"n": 1})
    seed.add(interrupted)
    interrupted.transition(JobStatus.PROCESSING)
    interrupted.advance(50, "Analyzing files")
    seed.save(interrupted)
    await seed.close()

    scheduler, executor = _scheduler(max_concurrent=1, auto_release=True, store=JobStore(Database(db_path)))
    recovered = await scheduler.start()
    assert [j.id for j in recovered] == [interrupted.id]

    await scheduler.wait_idle()
    job = scheduler.store.peek(interrupted.id)
    assert executor.started == [interrupted.id]
    assert job.status == JobStatus.DONE
    await scheduler.close()


@pytest.mark.anyio
async def test_apply_job_goes_through_admission_control():
    scheduler, executor = _scheduler(max_concurrent=1, auto_release=True)
    job = scheduler.create_apply_job("scan-1", [{"file": "a.js"}])
    assert job.kind == JobKind.APPLY
    assert job.payload == {"scan_id": "scan-1", "changes": [{"file": "a.js"}]}
    await scheduler.wait_idle()
    assert job.status == JobStatus.DONE
    assert scheduler.stats()["completed"] == 1
