from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from compatscan.compat.resolver import BROWSERS
from compatscan.cortex.events import TERMINAL_EVENT_KINDS, LifecycleEvent, event_to_dict
from compatscan.data.job_store import job_not_found
from compatscan.server.state import Runtime, get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.get("/scans/{scan_id}/stream")
async def stream_scan_events(scan_id: str, request: Request, runtime: Runtime = Depends(get_runtime)):
    """
    Server-Sent Events for one job.

    Emits a ``status`` snapshot first, then ``progress`` / ``done`` /
    ``removed`` as they happen, with a ``heartbeat`` while idle. The stream
    ends after ``done`` or ``removed``.
    """
    job = await runtime.scheduler.get_job(scan_id)
    if job is None:
        raise job_not_found(scan_id)

    heartbeat = runtime.config.server.heartbeat_seconds
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def _forward(event: LifecycleEvent) -> None:
        if event.job_id == scan_id:
            loop.call_soon_threadsafe(queue.put_nowait, event)

    async def event_generator():
        # Subscribe before the snapshot so nothing emitted in between is lost.
        unsubscribe = runtime.bus.subscribe(_forward)
        try:
            snapshot = job.snapshot()
            yield {"event": "status", "data": json.dumps(snapshot, default=str)}
            if job.is_terminal:
                yield {"event": "done", "data": json.dumps({"job_id": job.id, "result": job.result}, default=str)}
                return

            while True:
                if await request.is_disconnected():
                    logger.debug(f"[SSE] Client left stream for {scan_id}")
                    return
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=heartbeat)
                except asyncio.TimeoutError:
                    yield {"event": "heartbeat", "data": json.dumps({"ts": loop.time()})}
                    continue
                yield {
                    "event": event.kind,
                    "id": str(event.sequence),
                    "data": json.dumps(event_to_dict(event), default=str),
                }
                if event.kind in TERMINAL_EVENT_KINDS:
                    return
        finally:
            unsubscribe()

    return EventSourceResponse(event_generator())


@router.get("/browsers")
async def get_browsers():
    return {"browsers": list(BROWSERS)}
