"""FastAPI application for the compatscan job API."""
#
# PURPOSE:
# Builds the app, wires the runtime into app.state and maps structured
# errors to JSON responses.
#
# LIFECYCLE:
# - startup: build_runtime (unless one was injected) -> scheduler.start()
#   which reloads the durable store and re-enqueues interrupted jobs
# - shutdown: running jobs get a "shutdown" cancellation request and unwind
#   back to queued, the active set is joined, then the store is drained and
#   closed. Those jobs rerun from the first stage on the next start()
#

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from compatscan import __version__
from compatscan.base.config import CompatScanConfig, get_config, setup_logging
from compatscan.errors import CompatScanError
from compatscan.server.routers import jobs, realtime, scans
from compatscan.server.state import Runtime, build_runtime

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[Runtime] = None, config: Optional[CompatScanConfig] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = runtime or build_runtime(config)
        app.state.runtime = rt
        await rt.start()
        logger.info(
            f"[API] Runtime started (max_concurrent={rt.scheduler.max_concurrent}, "
            f"durable={rt.store.durable})"
        )
        try:
            yield
        finally:
            logger.info("[API] Shutting down runtime")
            await rt.stop(cancel_running=True)

    app = FastAPI(
        title="compatscan API",
        description="Browser compatibility scan orchestrator",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(CompatScanError)
    async def compatscan_error_handler(request: Request, exc: CompatScanError):
        logger.error(f"[API] {exc.code.value}: {exc.message}")
        return JSONResponse(
            status_code=exc.http_status,
            content={"error": exc.message, **exc.to_dict()},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]
        logger.warning(f"[API] Rejected request to {request.url.path}: {errors}")
        return JSONResponse(status_code=400, content={"errors": errors})

    @app.get("/health")
    async def health(request: Request):
        rt: Runtime = request.app.state.runtime
        return {"status": "ok", "version": __version__, "scheduler": rt.scheduler.stats()}

    app.include_router(scans.router)
    app.include_router(jobs.router)
    app.include_router(realtime.router)
    return app


def serve(host: Optional[str] = None, port: Optional[int] = None) -> None:
    config = get_config()
    setup_logging(config)
    uvicorn.run(
        create_app(config=config),
        host=host or config.server.api_host,
        port=port or config.server.api_port,
        log_level="info",
    )
