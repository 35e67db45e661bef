import asyncio

import pytest

from compatscan.cortex.events import (
    DoneEvent,
    EventBus,
    FailedEvent,
    ProgressEvent,
    RemovedEvent,
    event_to_dict,
)


def test_emit_delivers_in_order_with_increasing_sequence():
    bus = EventBus()
    seen = []
    bus.subscribe(seen.append)

    bus.emit(ProgressEvent(job_id="a", progress=20, step="Cloning repository"))
    bus.emit(ProgressEvent(job_id="a", progress=50, step="Analyzing files"))
    bus.emit(DoneEvent(job_id="a", result={"ok": True}))

    assert [e.kind for e in seen] == ["progress", "progress", "done"]
    assert [e.sequence for e in seen] == [1, 2, 3]
    assert bus.last_sequence == 3


def test_failing_subscriber_does_not_block_others():
    bus = EventBus()
    seen = []

    def boom(event):
        raise RuntimeError("subscriber bug")

    bus.subscribe(boom)
    bus.subscribe(seen.append)
    bus.emit(RemovedEvent(job_id="x"))
    assert len(seen) == 1


def test_unsubscribe_callable_stops_delivery():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe(seen.append)
    bus.emit(RemovedEvent(job_id="x"))
    unsubscribe()
    unsubscribe()  # idempotent
    bus.emit(RemovedEvent(job_id="y"))
    assert [e.job_id for e in seen] == ["x"]
    assert bus.subscriber_count == 0


def test_emit_with_no_subscribers_is_dropped():
    bus = EventBus()
    stamped = bus.emit(FailedEvent(job_id="z", error={"message": "nope"}))
    assert stamped.sequence == 1


def test_event_to_dict_includes_type():
    data = event_to_dict(ProgressEvent(job_id="a", progress=10, step="Queued", eta_ms=500))
    assert data["type"] == "progress"
    assert data["eta_ms"] == 500
    assert data["job_id"] == "a"


@pytest.mark.anyio
async def test_stream_filters_by_job_and_unsubscribes_on_close():
    bus = EventBus()
    received = []

    async def consume():
        async for event in bus.stream("a"):
            received.append(event)
            if event.kind == "done":
                break

    task = asyncio.create_task(consume())
    while bus.subscriber_count == 0:
        await asyncio.sleep(0)

    bus.emit(ProgressEvent(job_id="b", progress=50, step="other job"))
    bus.emit(ProgressEvent(job_id="a", progress=50, step="Analyzing files"))
    bus.emit(DoneEvent(job_id="a", result={}))
    await asyncio.wait_for(task, timeout=2)

    assert [e.kind for e in received] == ["progress", "done"]
    assert all(e.job_id == "a" for e in received)
    assert bus.subscriber_count == 0
