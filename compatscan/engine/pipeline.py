# ============================================================================
# compatscan/engine/pipeline.py
# Pipeline Executor
# ============================================================================
#
# PURPOSE:
# Runs one job from processing to a terminal state. A scan walks a fixed
# stage table; an apply job delegates to the apply handler.
#
#   Queued(0) -> Acquire(20) -> Analyzing files(50) -> Generating suggestions(80) -> Done(100)
#
# KEY RESPONSIBILITIES:
# - Report progress at every stage boundary (persist + ProgressEvent)
# - Check the cancellation token at every checkpoint
# - Arm the soft timeout for the job
# - Convert failures into a failed job plus FailedEvent and DoneEvent
#
# INTEGRATION:
# - Used by: JobScheduler (one asyncio task per active job)
# - Depends on: WorkspaceAcquirer, AnalyzerRegistry, CompatibilityResolver,
#   SuggestionGenerator, JobStore, EventBus
#
# ============================================================================

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from compatscan.ai.suggestions import SuggestionGenerator
from compatscan.base.cancellation import CancellationToken
from compatscan.base.config import ScanConfig
from compatscan.compat.resolver import CompatibilityResolver
from compatscan.cortex.events import DoneEvent, EventBus, FailedEvent, ProgressEvent
from compatscan.data.job_store import JobStore
from compatscan.engine.analyzers import AnalyzerRegistry
from compatscan.engine.models import (
    ANALYZE_SPAN,
    STAGE_ANALYZE,
    STAGE_DONE,
    STAGE_QUEUED,
    STAGE_SYNTHESIZE,
    FeatureRecord,
    Job,
    JobKind,
    JobStatus,
)
from compatscan.engine.synthesis import (
    SummaryLog,
    build_scan_result,
    collect_warnings,
    detect_architecture,
    detect_environment,
    detect_security_and_performance,
    list_all_files,
)
from compatscan.engine.walker import FileWalker
from compatscan.engine.workspace import Workspace, WorkspaceAcquirer, acquisition_stage
from compatscan.errors import AnalysisError, CancellationSignal, CompatScanError, serialize_error

logger = logging.getLogger(__name__)

ApplyHandler = Callable[[Job], Union[int, Awaitable[int]]]

APPLY_STEP = "Applying changes"
APPLY_MESSAGE = "Changes applied successfully"

# Cancellation reason that requeues the job instead of finishing it.
SHUTDOWN_REASON = "shutdown"


def default_apply_handler(job: Job) -> int:
    """Record-only apply: reports how many changes were requested."""
    changes = job.payload.get("changes") or []
    return len(changes) if isinstance(changes, (list, tuple, dict)) else 0


class PipelineExecutor:
    def __init__(
        self,
        store: JobStore,
        bus: EventBus,
        resolver: CompatibilityResolver,
        analyzers: Optional[AnalyzerRegistry] = None,
        acquirer: Optional[WorkspaceAcquirer] = None,
        suggestions: Optional[SuggestionGenerator] = None,
        apply_handler: Optional[ApplyHandler] = None,
        scan_config: Optional[ScanConfig] = None,
        scan_timeout_ms: int = 0,
    ):
        self.store = store
        self.bus = bus
        self.resolver = resolver
        self.scan_config = scan_config or ScanConfig()
        self.analyzers = analyzers or AnalyzerRegistry.default()
        self.acquirer = acquirer or WorkspaceAcquirer(self.scan_config)
        self.walker = FileWalker(self.scan_config)
        self.suggestions = suggestions or SuggestionGenerator()
        self.apply_handler = apply_handler or default_apply_handler
        self.scan_timeout_ms = max(0, int(scan_timeout_ms or 0))

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _is_live(self, job: Job) -> bool:
        return self.store.peek(job.id) is job

    def _report(self, job: Job, progress: int, step: str, eta_ms: Optional[int] = None, persist: bool = True) -> None:
        job.advance(progress, step)
        if not self._is_live(job):
            return
        if persist:
            self.store.save(job)
        self.bus.emit(ProgressEvent(job_id=job.id, progress=job.progress, step=job.step, eta_ms=eta_ms))

    def _finish(self, job: Job, status: JobStatus, result: Dict[str, Any], error: Optional[Dict[str, Any]] = None) -> None:
        job.result = result
        job.transition(status)
        if not self._is_live(job):
            logger.debug(f"[Pipeline] Job {job.id} was removed; dropping terminal events")
            return
        self.store.save(job)
        if error is not None:
            self.bus.emit(FailedEvent(job_id=job.id, error=error))
        self.bus.emit(DoneEvent(job_id=job.id, result=result))

    def _requeue(self, job: Job) -> None:
        """Leave the durable row queued so the next start() reruns the job from stage 1."""
        job.reset_for_recovery()
        if self._is_live(job):
            self.store.save(job)
        logger.info(f"[Pipeline] Job {job.id} interrupted by shutdown; left queued for restart")

    def _on_timeout(self, job: Job, token: CancellationToken) -> None:
        if request_cancel(job, token, "timeout"):
            self.store.save(job)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self, job: Job, token: CancellationToken) -> None:
        """
        Drive ``job`` to a terminal state. A shutdown request sends it back
        to queued instead. Never raises except on task cancellation.
        """
        loop = asyncio.get_running_loop()
        timer: Optional[asyncio.TimerHandle] = None
        if self.scan_timeout_ms > 0:
            timer = loop.call_later(self.scan_timeout_ms / 1000.0, self._on_timeout, job, token)

        job.transition(JobStatus.PROCESSING)
        self._report(job, STAGE_QUEUED.progress, STAGE_QUEUED.name)
        logger.info(f"[Pipeline] Job {job.id} ({job.kind.value}) started")

        try:
            if job.kind == JobKind.APPLY:
                result = await self._run_apply(job, token)
            else:
                result = await self._run_scan(job, token)
        except CancellationSignal as sig:
            reason = token.reason or sig.reason
            if reason == SHUTDOWN_REASON:
                self._requeue(job)
            else:
                logger.info(f"[Pipeline] Job {job.id} cancelled ({reason})")
                self._finish(job, JobStatus.CANCELLED, {"cancelled": True, "reason": reason})
        except asyncio.CancelledError:
            reason = token.reason or SHUTDOWN_REASON
            logger.warning(f"[Pipeline] Job {job.id} task cancelled ({reason})")
            if reason == SHUTDOWN_REASON:
                self._requeue(job)
            else:
                self._finish(job, JobStatus.CANCELLED, {"cancelled": True, "reason": reason})
            raise
        except Exception as e:
            error = serialize_error(e)
            if isinstance(e, CompatScanError):
                logger.error(f"[Pipeline] Job {job.id} failed: {e}")
            else:
                logger.error(f"[Pipeline] Job {job.id} crashed: {e}", exc_info=True)
            self._finish(job, JobStatus.FAILED, {"error": error["message"], "code": error["code"]}, error=error)
        else:
            job.advance(STAGE_DONE.progress, STAGE_DONE.name)
            job.result = result
            job.transition(JobStatus.DONE)
            if self._is_live(job):
                self.store.save(job)
                self.bus.emit(ProgressEvent(job_id=job.id, progress=job.progress, step=job.step))
                self.bus.emit(DoneEvent(job_id=job.id, result=result))
            logger.info(f"[Pipeline] Job {job.id} done")
        finally:
            if timer is not None:
                timer.cancel()

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def _run_apply(self, job: Job, token: CancellationToken) -> Dict[str, Any]:
        token.raise_if_requested()
        self._report(job, STAGE_ANALYZE.progress, APPLY_STEP)
        applied = self.apply_handler(job)
        if inspect.isawaitable(applied):
            applied = await applied
        token.raise_if_requested()
        return {
            "message": APPLY_MESSAGE,
            "scanId": job.payload.get("scan_id"),
            "applied": int(applied or 0),
        }

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    async def _run_scan(self, job: Job, token: CancellationToken) -> Dict[str, Any]:
        payload = job.payload
        summary = SummaryLog()

        acquire = acquisition_stage(payload)
        summary.stage("acquire")
        self._report(job, acquire.progress, acquire.name)
        token.raise_if_requested()

        workspace = await self.acquirer.acquire(payload, token)
        summary.log(f"Workspace ready at {workspace.root} ({workspace.method})")
        try:
            token.raise_if_requested()
            return await self._analyze_and_synthesize(job, token, workspace, summary)
        finally:
            await self.acquirer.release(workspace)

    async def _analyze_and_synthesize(
        self,
        job: Job,
        token: CancellationToken,
        workspace: Workspace,
        summary: SummaryLog,
    ) -> Dict[str, Any]:
        payload = job.payload
        root = workspace.root
        excludes = list(payload.get("exclude_paths") or [])

        summary.stage("analyze")
        self._report(job, STAGE_ANALYZE.progress, STAGE_ANALYZE.name)
        files = await asyncio.to_thread(self.walker.walk, root, excludes)
        summary.log(f"Files discovered: {len(files)}")

        record = FeatureRecord()
        skipped: List[str] = []
        total = len(files)
        started = time.monotonic()
        for i, rel in enumerate(files, 1):
            token.raise_if_requested()
            try:
                keys = await self.analyzers.analyze(root, rel)
            except AnalysisError as e:
                logger.warning(f"[Pipeline] Skipping {rel}: {e.message}")
                skipped.append(rel)
                keys = []
            if keys:
                record.add(rel, keys)

            elapsed = time.monotonic() - started
            eta_ms = int(elapsed / i * (total - i) * 1000)
            progress = STAGE_ANALYZE.progress + round(i / total * ANALYZE_SPAN)
            self._report(job, progress, f"Analyzing {i}/{total} files", eta_ms=eta_ms, persist=False)
            await asyncio.sleep(0)

        summary.log(f"Files analyzed: {total - len(skipped)}, with features: {len(record)}, skipped: {len(skipped)}")
        token.raise_if_requested()

        summary.stage("synthesize")
        self._report(job, STAGE_SYNTHESIZE.progress, STAGE_SYNTHESIZE.name)
        environment, architecture, security, all_files = await asyncio.to_thread(
            self._snapshots, root, payload, files, excludes
        )
        token.raise_if_requested()

        context = {
            "projectFeatures": {"detectedFeatures": record.unique_features()},
            "architecture": architecture,
            "securityAndPerformance": security,
            "environment": environment,
        }
        ai_suggestions = await self._suggest(job, context)
        token.raise_if_requested()

        summary_log = summary.finish(
            files_discovered=len(all_files),
            files_ignored=max(0, len(all_files) - len(files)) + len(skipped),
            warnings=collect_warnings(security),
        )
        return build_scan_result(
            scan_id=job.id,
            files=files,
            record=record,
            resolver=self.resolver,
            environment=environment,
            architecture=architecture,
            security=security,
            ai_suggestions=ai_suggestions,
            summary_log=summary_log,
        )

    def _snapshots(self, root, payload, files, excludes) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any], List[str]]:
        all_files = list_all_files(root, self.scan_config, excludes)
        environment = detect_environment(root, payload)
        architecture = detect_architecture(root, files, all_files, environment)
        security = detect_security_and_performance(root, all_files)
        return environment, architecture, security, all_files

    async def _suggest(self, job: Job, context: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = await self.suggestions.generate(context)
        except Exception as e:
            logger.warning(f"[Pipeline] Suggestions failed for {job.id}: {e}")
            return {"items": []}
        return result if isinstance(result, dict) and "items" in result else {"items": []}


def request_cancel(job: Job, token: CancellationToken, reason: str) -> bool:
    """Flag ``job`` for cooperative cancellation. First reason wins."""
    if job.is_terminal:
        return False
    changed = token.cancel(reason)
    if changed:
        job.cancel_requested = True
        job.cancel_reason = reason
        job.touch()
        logger.info(f"[Pipeline] Cancellation requested for {job.id} ({reason})")
    return changed
