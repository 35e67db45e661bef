from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from compatscan.ai.suggestions import SuggestionGenerator
from compatscan.base.config import CompatScanConfig, get_config
from compatscan.compat.resolver import CompatibilityResolver
from compatscan.cortex.events import EventBus
from compatscan.data.db import Database
from compatscan.data.job_store import JobStore
from compatscan.engine.analyzers import AnalyzerRegistry
from compatscan.engine.pipeline import ApplyHandler, PipelineExecutor
from compatscan.engine.scheduler import JobScheduler
from compatscan.engine.workspace import WorkspaceAcquirer

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything one server process (or one CLI run) shares."""

    config: CompatScanConfig
    bus: EventBus
    store: JobStore
    resolver: CompatibilityResolver
    executor: PipelineExecutor
    scheduler: JobScheduler

    async def start(self) -> None:
        await self.scheduler.start()

    async def stop(self, cancel_running: bool = True) -> None:
        await self.scheduler.close(cancel_running=cancel_running)


def build_runtime(
    config: Optional[CompatScanConfig] = None,
    analyzers: Optional[AnalyzerRegistry] = None,
    acquirer: Optional[WorkspaceAcquirer] = None,
    suggestions: Optional[SuggestionGenerator] = None,
    apply_handler: Optional[ApplyHandler] = None,
) -> Runtime:
    cfg = config or get_config()

    database = Database(cfg.storage.db_path) if cfg.storage.persistence_enabled else None
    if database is None:
        logger.info("[Runtime] Persistence disabled; jobs live in memory only")

    bus = EventBus()
    store = JobStore(database)
    resolver = CompatibilityResolver.from_config(cfg.compat)
    executor = PipelineExecutor(
        store=store,
        bus=bus,
        resolver=resolver,
        analyzers=analyzers,
        acquirer=acquirer or WorkspaceAcquirer(cfg.scan),
        suggestions=suggestions or SuggestionGenerator(cfg.suggestions),
        apply_handler=apply_handler,
        scan_config=cfg.scan,
        scan_timeout_ms=cfg.scheduler.scan_timeout_ms,
    )
    scheduler = JobScheduler(store, bus, executor, max_concurrent=cfg.scheduler.max_concurrent)
    return Runtime(
        config=cfg,
        bus=bus,
        store=store,
        resolver=resolver,
        executor=executor,
        scheduler=scheduler,
    )


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency: the runtime attached to the app at startup."""
    return request.app.state.runtime
