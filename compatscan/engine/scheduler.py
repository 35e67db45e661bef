# ============================================================================
# compatscan/engine/scheduler.py
# Job Scheduler
# ============================================================================
#
# PURPOSE:
# Owns job lifecycle and admission control: the FIFO pending queue, the
# bounded active set and one asyncio task per active job.
#
# KEY CONCEPTS:
# 1. Single writer: every queue / active-set mutation happens in a plain
#    (non-async) method on the event loop, so two dispatch decisions can
#    never interleave.
# 2. |active| <= max_concurrent always; the only place a job enters the
#    active set is schedule_next().
# 3. Explicit task handles: wait() and shutdown() join tasks, never poll.
#
# ============================================================================

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from compatscan.base.cancellation import CancellationToken
from compatscan.base.config import resolve_max_concurrent
from compatscan.cortex.events import DoneEvent, EventBus, FailedEvent, RemovedEvent
from compatscan.data.job_store import JobStore
from compatscan.engine.models import CancelOutcome, Job, JobKind, JobStatus
from compatscan.engine.pipeline import SHUTDOWN_REASON, PipelineExecutor, request_cancel
from compatscan.errors import CompatScanError, ErrorCode, serialize_error

logger = logging.getLogger(__name__)


class JobScheduler:
    def __init__(
        self,
        store: JobStore,
        bus: EventBus,
        executor: PipelineExecutor,
        max_concurrent: Any = None,
    ):
        self.store = store
        self.bus = bus
        self.executor = executor
        self._max_concurrent = resolve_max_concurrent(max_concurrent)

        self._pending: Deque[Job] = deque()
        self._active: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._draining = False
        self._peak_active = 0
        self._completed = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active_ids(self) -> List[str]:
        return list(self._active)

    @property
    def pending_ids(self) -> List[str]:
        return [j.id for j in self._pending]

    @property
    def peak_active(self) -> int:
        return self._peak_active

    @property
    def draining(self) -> bool:
        return self._draining

    def stats(self) -> Dict[str, Any]:
        return {
            "max_concurrent": self._max_concurrent,
            "active": len(self._active),
            "pending": len(self._pending),
            "peak_active": self._peak_active,
            "completed": self._completed,
            "draining": self._draining,
            "jobs": len(self.store),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> List[Job]:
        """Open the store and re-enqueue jobs interrupted by the last shutdown."""
        self._draining = False
        recovered = await self.store.open()
        for job in recovered:
            self._pending.append(job)
        if recovered:
            logger.info(f"[JobScheduler] Re-enqueued {len(recovered)} recovered jobs")
        self.schedule_next()
        return recovered

    async def shutdown(self, cancel_running: bool = False) -> None:
        """
        Stop admitting pending work and wait for the active set to empty.

        Pending jobs stay queued in the durable store for the next start().
        """
        self._draining = True
        logger.info(
            f"[JobScheduler] Shutting down: {len(self._active)} active, "
            f"{len(self._pending)} pending (cancel_running={cancel_running})"
        )
        if cancel_running:
            for job_id in list(self._active):
                job = self.store.peek(job_id)
                token = self._tokens.get(job_id)
                if job is not None and token is not None:
                    request_cancel(job, token, SHUTDOWN_REASON)

        while self._active:
            await asyncio.gather(*list(self._active.values()), return_exceptions=True)
        logger.info("[JobScheduler] Active set empty")

    async def close(self, cancel_running: bool = False) -> None:
        await self.shutdown(cancel_running=cancel_running)
        await self.store.close()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def create_job(self, payload: Dict[str, Any], kind: JobKind = JobKind.SCAN) -> Job:
        """Register a new queued job and try to dispatch it. Returns immediately."""
        job = Job(payload=dict(payload or {}), kind=JobKind(kind))
        self.store.add(job)
        self._pending.append(job)
        logger.info(f"[JobScheduler] Queued {job.kind.value} job {job.id}")
        self.schedule_next()
        return job

    def create_apply_job(self, scan_id: str, changes: Any = None) -> Job:
        return self.create_job({"scan_id": scan_id, "changes": changes or []}, kind=JobKind.APPLY)

    def schedule_next(self) -> None:
        """Fill free slots from the head of the pending queue."""
        if self._draining:
            return
        while self._pending and len(self._active) < self._max_concurrent:
            job = self._pending.popleft()
            if job.id in self._active or job.status != JobStatus.QUEUED:
                continue
            self._dispatch(job)

    def _dispatch(self, job: Job) -> None:
        token = CancellationToken()
        self._tokens[job.id] = token
        task = asyncio.get_running_loop().create_task(self._guarded_run(job, token), name=f"job-{job.id}")
        self._active[job.id] = task
        self._peak_active = max(self._peak_active, len(self._active))
        task.add_done_callback(lambda _t, job_id=job.id: self._on_task_done(job_id))

    async def _guarded_run(self, job: Job, token: CancellationToken) -> None:
        try:
            await self.executor.run(job, token)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The executor handles its own failures; anything reaching here is a bug.
            logger.critical(f"[JobScheduler] Pipeline escaped for {job.id}: {e}", exc_info=True)
            if not job.is_terminal:
                error = serialize_error(
                    CompatScanError(
                        ErrorCode.JOB_PIPELINE_CRASHED,
                        str(e) or type(e).__name__,
                        details={"error_type": type(e).__name__},
                    )
                )
                job.result = {"error": error["message"], "code": error["code"]}
                job.status = JobStatus.FAILED
                job.touch()
                self.store.save(job)
                if self.store.peek(job.id) is job:
                    self.bus.emit(FailedEvent(job_id=job.id, error=error))
                    self.bus.emit(DoneEvent(job_id=job.id, result=job.result))

    def _on_task_done(self, job_id: str) -> None:
        self._active.pop(job_id, None)
        self._tokens.pop(job_id, None)
        self._completed += 1
        self.schedule_next()

    # ------------------------------------------------------------------
    # Queries and control
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.store.get_job(job_id)

    async def cancel_job(self, job_id: str) -> CancelOutcome:
        job = await self.store.get_job(job_id)
        if job is None:
            return CancelOutcome(found=False, changed=False, status="not_found")
        if job.is_terminal:
            return CancelOutcome(found=True, changed=False, status=job.status.value)

        token = self._tokens.get(job_id)
        if job_id in self._active and token is not None:
            request_cancel(job, token, "user")
            self.store.save(job)
            return CancelOutcome(found=True, changed=True, status=job.status.value)

        return self._cancel_pending(job)

    def _cancel_pending(self, job: Job) -> CancelOutcome:
        try:
            self._pending.remove(job)
        except ValueError:
            pass
        job.cancel_requested = True
        job.cancel_reason = "user"
        job.result = {"cancelled": True, "reason": "user"}
        job.transition(JobStatus.CANCELLED)
        self.store.save(job)
        self.bus.emit(DoneEvent(job_id=job.id, result=job.result))
        logger.info(f"[JobScheduler] Cancelled pending job {job.id}")
        return CancelOutcome(found=True, changed=True, status=job.status.value)

    def remove_job(self, job_id: str) -> bool:
        """
        Forget a job everywhere and emit ``removed``.

        An in-flight pipeline is asked to stop (reason "removed"); its slot
        stays in the active set until the task actually unwinds.
        """
        job = self.store.remove(job_id)
        if job is None:
            return False
        for pending in list(self._pending):
            if pending.id == job_id:
                self._pending.remove(pending)

        token = self._tokens.get(job_id)
        if token is not None:
            request_cancel(job, token, "removed")

        self.bus.emit(RemovedEvent(job_id=job_id))
        logger.info(f"[JobScheduler] Removed job {job_id}")
        return True

    async def wait(self, job_id: str) -> Optional[Job]:
        """Wait for an active job's task to finish. Returns the job (if still known)."""
        task = self._active.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.store.peek(job_id)

    async def wait_idle(self) -> None:
        """Wait until nothing is active or pending (tests, CLI)."""
        while self._active:
            await asyncio.gather(*list(self._active.values()), return_exceptions=True)
            await asyncio.sleep(0)
