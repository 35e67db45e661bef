# ============================================================================
# tests/unit/test_job_store.py
# JobStore write-through, recovery on open, and the BlackBox writer
# ============================================================================

import pytest

from compatscan.data.blackbox import BlackBox
from compatscan.data.db import Database
from compatscan.data.job_store import JobStore
from compatscan.engine.models import Job, JobKind, JobStatus
from compatscan.errors import PersistenceError


async def _open_store(path):
    store = JobStore(Database(path))
    recovered = await store.open()
    return store, recovered


@pytest.mark.anyio
async def test_write_through_survives_reopen(tmp_path):
    db_path = tmp_path / "jobs.db"
    store, _ = await _open_store(db_path)
    assert store.durable

    job = Job(payload={"local_path": "/tmp/x"})
    store.add(job)
    job.transition(JobStatus.PROCESSING)
    job.advance(50, "Analyzing files")
    job.result = {"summary": {"totalFiles": 3}}
    job.transition(JobStatus.DONE)
    store.save(job)
    await store.close()

    reopened, recovered = await _open_store(db_path)
    assert recovered == []
    loaded = await reopened.get_job(job.id)
    assert loaded is not None
    assert loaded.status == JobStatus.DONE
    assert loaded.result == {"summary": {"totalFiles": 3}}
    assert loaded.payload == {"local_path": "/tmp/x"}
    await reopened.close()


@pytest.mark.anyio
async def test_open_resets_interrupted_jobs_to_queued(tmp_path):
    db_path = tmp_path / "jobs.db"
    store, _ = await _open_store(db_path)

    older = Job(payload={"n": 1}, created_at=100.0)
    newer = Job(payload={"n": 2}, created_at=200.0)
    finished = Job(payload={"n": 3}, created_at=50.0)
    for job in (newer, older, finished):
        store.add(job)

    newer.transition(JobStatus.PROCESSING)
    newer.advance(50, "Analyzing files")
    newer.cancel_requested = True
    newer.cancel_reason = "user"
    store.save(newer)

    finished.transition(JobStatus.PROCESSING)
    finished.result = {"ok": True}
    finished.transition(JobStatus.DONE)
    store.save(finished)
    await store.close()

    reopened, recovered = await _open_store(db_path)
    assert [j.id for j in recovered] == [older.id, newer.id]
    for job in recovered:
        assert job.status == JobStatus.QUEUED
        assert job.progress == 0
        assert job.result is None
        assert job.cancel_requested is False
        assert job.cancel_reason is None
    assert reopened.peek(finished.id).status == JobStatus.DONE
    await reopened.close()


@pytest.mark.anyio
async def test_save_of_removed_job_is_a_noop(tmp_path):
    store, _ = await _open_store(tmp_path / "jobs.db")
    job = Job(payload={})
    store.add(job)
    assert store.remove(job.id) is job
    job.advance(10)
    store.save(job)
    await store.flush()

    assert store.peek(job.id) is None
    assert await store.get_job(job.id) is None
    await store.close()


@pytest.mark.anyio
async def test_removed_job_is_not_reloaded_before_delete_lands(tmp_path):
    store, _ = await _open_store(tmp_path / "jobs.db")
    job = Job(payload={})
    store.add(job)
    await store.flush()

    store.remove(job.id)
    assert await store.get_job(job.id) is None
    await store.flush()
    assert store.peek(job.id) is None
    assert await store.get_job(job.id) is None
    await store.close()


@pytest.mark.anyio
async def test_get_job_falls_back_to_database_on_cache_miss(tmp_path):
    db_path = tmp_path / "jobs.db"
    writer, _ = await _open_store(db_path)
    job = Job(payload={"k": "v"}, kind=JobKind.APPLY)
    writer.add(job)
    await writer.flush()

    reader = JobStore(Database(db_path))
    await reader.open()
    reader._jobs.clear()
    loaded = await reader.get_job(job.id)
    assert loaded.kind == JobKind.APPLY
    assert reader.peek(job.id) is loaded

    await writer.close()
    await reader.close()


@pytest.mark.anyio
async def test_unreachable_database_degrades_to_memory(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way")
    store = JobStore(Database(blocker / "jobs.db"))

    assert await store.open() == []
    assert not store.durable
    job = Job(payload={})
    store.add(job)
    assert await store.get_job(job.id) is job
    await store.close()


@pytest.mark.anyio
async def test_memory_only_store():
    store = JobStore()
    assert await store.open() == []
    job = Job(payload={})
    store.add(job)
    assert store.all() == [job]
    assert len(store) == 1


@pytest.mark.anyio
async def test_blackbox_applies_writes_in_order_and_survives_failures():
    box = BlackBox()
    box.start()
    applied = []

    async def write(value):
        applied.append(value)

    async def broken():
        raise RuntimeError("disk full")

    box.fire_and_forget(write, 1)
    box.fire_and_forget(broken)
    box.fire_and_forget(write, 2)
    assert await box.enqueue(write, 3) is None

    with pytest.raises(PersistenceError):
        await box.enqueue(broken)

    await box.shutdown()
    assert applied == [1, 2, 3]
    assert box.failures == 2
    assert not box.accepting
    with pytest.raises(PersistenceError):
        await box.enqueue(write, 4)
