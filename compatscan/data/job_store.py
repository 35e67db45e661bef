"""In-memory job cache with a durable SQLite shadow."""
#
# PURPOSE:
# Owns every Job object. The cache answers all runtime reads; the database
# is written through opportunistically and read only at startup and on a
# cache miss.
#
# RECOVERY:
# Jobs found queued or processing at open() were interrupted by a restart.
# They are reset to a fresh queued state and handed back for re-enqueueing.
# No stage is resumed mid-way.
#

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Set

from compatscan.data.db import Database
from compatscan.engine.models import Job, JobStatus
from compatscan.errors import CompatScanError, ErrorCode, PersistenceError

logger = logging.getLogger(__name__)


class JobStore:
    def __init__(self, database: Optional[Database] = None):
        self._jobs: Dict[str, Job] = {}
        # Ids deleted in this process; their rows may still be on disk until the writer drains.
        self._removed: Set[str] = set()
        self._db = database
        self._durable = False

    @property
    def durable(self) -> bool:
        return self._durable

    async def open(self) -> List[Job]:
        """
        Load persisted jobs and return the ones that must be re-enqueued,
        oldest first.
        """
        if self._db is None:
            logger.info("[JobStore] No database configured; running in memory only")
            return []

        try:
            await self._db.init()
            rows = await self._db.get_all_job_rows()
        except PersistenceError as e:
            logger.error(f"[JobStore] {e}; running in memory only")
            self._durable = False
            return []

        self._durable = True
        recovered: List[Job] = []
        for row in rows:
            try:
                job = Job.from_row(row)
            except (KeyError, ValueError) as e:
                logger.warning(f"[JobStore] Skipping unreadable job row {row.get('id')}: {e}")
                continue
            if job.status in (JobStatus.QUEUED, JobStatus.PROCESSING):
                if job.status == JobStatus.PROCESSING:
                    logger.info(f"[JobStore] Recovering interrupted job {job.id}")
                job.reset_for_recovery()
                recovered.append(job)
                self._write(job)
            self._jobs[job.id] = job

        recovered.sort(key=lambda j: j.created_at)
        logger.info(f"[JobStore] Loaded {len(self._jobs)} jobs, {len(recovered)} to re-enqueue")
        return recovered

    def add(self, job: Job) -> None:
        self._jobs[job.id] = job
        self._write(job)

    def save(self, job: Job) -> None:
        """Write-through for a cached job. A removed job is silently ignored."""
        if self._jobs.get(job.id) is not job:
            return
        self._write(job)

    def _write(self, job: Job) -> None:
        if self._durable:
            self._db.save_job(job.to_row())

    def peek(self, job_id: str) -> Optional[Job]:
        """Cache-only lookup."""
        return self._jobs.get(job_id)

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Cache first; on a miss, fall back to the database and repopulate the cache."""
        job = self._jobs.get(job_id)
        if job is not None or not self._durable or job_id in self._removed:
            return job
        try:
            row = await self._db.get_job_row(job_id)
        except PersistenceError as e:
            logger.error(f"[JobStore] Lookup of {job_id} failed: {e}")
            return None
        if row is None or job_id in self._removed:
            return None
        job = Job.from_row(row)
        self._jobs.setdefault(job.id, job)
        return self._jobs[job.id]

    def remove(self, job_id: str) -> Optional[Job]:
        job = self._jobs.pop(job_id, None)
        self._removed.add(job_id)
        if self._durable:
            self._db.delete_job(job_id)
        return job

    def all(self) -> List[Job]:
        return sorted(self._jobs.values(), key=lambda j: j.created_at)

    def __len__(self) -> int:
        return len(self._jobs)

    async def flush(self) -> None:
        if self._durable:
            await self._db.flush()

    async def close(self) -> None:
        if self._db is None:
            return
        await self._db.close()
        self._durable = False


def job_not_found(job_id: str) -> CompatScanError:
    return CompatScanError(ErrorCode.JOB_NOT_FOUND, f"Job not found: {job_id}", details={"id": job_id})
