from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from compatscan.data.job_store import job_not_found
from compatscan.engine.models import Job, JobKind, JobStatus
from compatscan.server.state import Runtime, get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scans", tags=["scans"])

NOT_COMPLETE_MESSAGE = "Scan is not yet complete."


class ScanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    repo_url: Optional[str] = Field(None, alias="repoUrl", max_length=2048)
    zip_buffer: Optional[str] = Field(None, alias="zipBuffer")
    local_path: Optional[str] = Field(None, alias="localPath", max_length=4096)
    target_browsers: Optional[List[str]] = Field(None, alias="targetBrowsers")
    exclude_paths: Optional[List[str]] = Field(None, alias="excludePaths")
    branch: Optional[str] = Field(None, max_length=255)
    ref: Optional[str] = Field(None, max_length=255)

    @field_validator("repo_url")
    @classmethod
    def validate_repo_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        dangerous_patterns = [";", "&&", "||", "`", "$(", "\n", "\r"]
        for pattern in dangerous_patterns:
            if pattern in v:
                logger.warning(f"Scan rejected: dangerous character '{pattern}' in repoUrl: {v}")
                raise ValueError(f"Invalid character in repoUrl: {pattern}")
        if v.startswith("-"):
            raise ValueError("Invalid repoUrl")
        return v or None

    @field_validator("zip_buffer")
    @classmethod
    def validate_zip_buffer(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("zipBuffer must be base64-encoded")
        return v

    @field_validator("branch", "ref")
    @classmethod
    def validate_git_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if v.startswith("-") or any(c in v for c in (" ", "\n", "\r", ";", "`")):
            raise ValueError("Invalid git branch or ref")
        return v or None

    @model_validator(mode="after")
    def exactly_one_source(self) -> "ScanRequest":
        sources = [s for s in (self.repo_url, self.zip_buffer, self.local_path) if s]
        if len(sources) != 1:
            raise ValueError("Provide exactly one of repoUrl, zipBuffer or localPath")
        return self

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ApplyRequest(BaseModel):
    changes: List[Any] = Field(default_factory=list)


async def _require_job(runtime: Runtime, scan_id: str) -> Job:
    job = await runtime.scheduler.get_job(scan_id)
    if job is None or job.kind != JobKind.SCAN:
        raise job_not_found(scan_id)
    return job


def _pending(job: Job) -> JSONResponse:
    return JSONResponse(
        status_code=202,
        content={"scanId": job.id, "status": job.status.value, "message": NOT_COMPLETE_MESSAGE},
    )


@router.post("", status_code=201)
async def create_scan(req: ScanRequest, runtime: Runtime = Depends(get_runtime)):
    job = runtime.scheduler.create_job(req.to_payload(), kind=JobKind.SCAN)
    return {"scanId": job.id, "status": job.status.value}


@router.get("")
async def list_scans(runtime: Runtime = Depends(get_runtime)):
    return {
        "scans": [
            {"scanId": j.id, "status": j.status.value, "progress": j.progress, "createdAt": j.created_at}
            for j in runtime.store.all()
            if j.kind == JobKind.SCAN
        ]
    }


@router.get("/{scan_id}/status")
async def get_scan_status(scan_id: str, runtime: Runtime = Depends(get_runtime)):
    job = await _require_job(runtime, scan_id)
    return {"scanId": job.id, "status": job.status.value, "progress": job.progress}


@router.get("/{scan_id}/result")
async def get_scan_result(scan_id: str, runtime: Runtime = Depends(get_runtime)):
    job = await _require_job(runtime, scan_id)
    if job.status == JobStatus.DONE:
        return {"scanId": job.id, "status": job.status.value, "result": job.result}
    if job.status == JobStatus.FAILED:
        error = (job.result or {}).get("error")
        return {"scanId": job.id, "status": job.status.value, "error": error}
    return _pending(job)


@router.get("/{scan_id}/suggestions")
async def get_scan_suggestions(scan_id: str, runtime: Runtime = Depends(get_runtime)):
    job = await _require_job(runtime, scan_id)
    if job.status != JobStatus.DONE:
        return _pending(job)
    ai = (job.result or {}).get("aiSuggestions") or {"items": []}
    return {"scanId": job.id, "status": job.status.value, "aiSuggestions": ai}


@router.get("/{scan_id}/report")
async def download_report(scan_id: str, runtime: Runtime = Depends(get_runtime)):
    job = await _require_job(runtime, scan_id)
    if job.status != JobStatus.DONE:
        return _pending(job)
    result = job.result or {}
    report = {
        "id": job.id,
        "repoUrl": job.payload.get("repo_url"),
        "summary": result.get("summary", {}),
        "projectFeatures": result.get("projectFeatures", {}),
        "architecture": result.get("architecture", {}),
        "compatibility": {"baselineByFeature": result.get("baselineByFeature", {})},
        "securityAndPerformance": result.get("securityAndPerformance", {}),
        "aiSuggestions": result.get("aiSuggestions", {"items": []}),
        "summaryLog": result.get("summaryLog", {}),
        "apiVersion": "v1",
    }
    return JSONResponse(
        content=report,
        headers={"Content-Disposition": f'attachment; filename="scan-{job.id}-report.json"'},
    )


@router.post("/{scan_id}/apply", status_code=202)
async def apply_scan_changes(scan_id: str, req: ApplyRequest, runtime: Runtime = Depends(get_runtime)):
    await _require_job(runtime, scan_id)
    job = runtime.scheduler.create_apply_job(scan_id, req.changes)
    return {"applyJobId": job.id, "status": job.status.value}
