from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Response

from compatscan.data.job_store import job_not_found
from compatscan.errors import CompatScanError, ErrorCode
from compatscan.server.state import Runtime, get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/{job_id}")
async def get_job(job_id: str, runtime: Runtime = Depends(get_runtime)):
    job = await runtime.scheduler.get_job(job_id)
    if job is None:
        raise job_not_found(job_id)
    return job.snapshot()


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str, runtime: Runtime = Depends(get_runtime)):
    outcome = await runtime.scheduler.cancel_job(job_id)
    if not outcome.found:
        raise job_not_found(job_id)
    if not outcome.changed:
        raise CompatScanError(
            ErrorCode.JOB_ALREADY_TERMINAL,
            f"Job already {outcome.status}",
            details={"id": job_id, "status": outcome.status},
        )
    return {"id": job_id, "status": outcome.status}


@router.delete("/{job_id}", status_code=204)
async def delete_job(job_id: str, runtime: Runtime = Depends(get_runtime)):
    if not runtime.scheduler.remove_job(job_id):
        raise job_not_found(job_id)
    return Response(status_code=204)


@router.get("")
async def scheduler_stats(runtime: Runtime = Depends(get_runtime)):
    return {
        **runtime.scheduler.stats(),
        "active_ids": runtime.scheduler.active_ids,
        "pending_ids": runtime.scheduler.pending_ids,
    }
