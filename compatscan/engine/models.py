"""Job, stage and verdict records shared by the engine, the store and the API."""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.DONE, JobStatus.FAILED, JobStatus.CANCELLED})

# Allowed forward moves. Recovery (processing -> queued) goes through Job.reset_for_recovery.
_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.CANCELLED, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.DONE, JobStatus.FAILED, JobStatus.CANCELLED},
}


class JobKind(str, Enum):
    SCAN = "scan"
    APPLY = "apply"


class SupportStatus(str, Enum):
    SUPPORTED = "supported"
    PARTIAL = "partial"
    UNSUPPORTED = "unsupported"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Stage:
    name: str
    progress: int


STAGE_QUEUED = Stage("Queued", 0)
STAGE_CLONE = Stage("Cloning repository", 20)
STAGE_UNPACK = Stage("Unpacking archive", 20)
STAGE_LOCAL = Stage("Preparing local workspace", 20)
STAGE_ANALYZE = Stage("Analyzing files", 50)
STAGE_SYNTHESIZE = Stage("Generating suggestions", 80)
STAGE_DONE = Stage("Done", 100)

# Progress window covered by per-file updates during analysis
ANALYZE_SPAN = STAGE_SYNTHESIZE.progress - STAGE_ANALYZE.progress


@dataclass
class BaselineEntry:
    feature: str
    status: str
    support: Dict[str, str]
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature,
            "status": self.status,
            "support": dict(self.support),
            "notes": self.notes,
        }


@dataclass(frozen=True)
class CancelOutcome:
    found: bool
    changed: bool
    status: str

    def to_dict(self) -> Dict[str, Any]:
        return {"found": self.found, "changed": self.changed, "status": self.status}


class FeatureRecord:
    """
    Relative file path -> ordered, de-duplicated feature keys.

    Insertion order is preserved both for files and for keys within a file.
    """

    def __init__(self):
        self._files: Dict[str, List[str]] = {}

    def add(self, path: str, features) -> None:
        bucket = self._files.setdefault(path, [])
        for key in features:
            if key and key not in bucket:
                bucket.append(key)

    def unique_features(self) -> List[str]:
        seen: Dict[str, None] = {}
        for keys in self._files.values():
            for key in keys:
                seen.setdefault(key, None)
        return list(seen)

    def items(self):
        return self._files.items()

    def files_with_features(self) -> List[str]:
        return [path for path, keys in self._files.items() if keys]

    def to_dict(self) -> Dict[str, List[str]]:
        return {path: list(keys) for path, keys in self._files.items()}

    def __len__(self) -> int:
        return len(self._files)

    def __contains__(self, path: str) -> bool:
        return path in self._files


@dataclass
class Job:
    payload: Dict[str, Any]
    kind: JobKind = JobKind.SCAN
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    step: str = STAGE_QUEUED.name
    result: Optional[Dict[str, Any]] = None
    cancel_requested: bool = False
    cancel_reason: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, new_status: JobStatus) -> None:
        """Move status forward. Backwards or sideways moves raise ValueError."""
        if new_status == self.status:
            return
        if new_status not in _TRANSITIONS.get(self.status, set()):
            raise ValueError(f"Illegal job transition {self.status.value} -> {new_status.value}")
        self.status = new_status
        if new_status == JobStatus.PROCESSING:
            self.started_at = time.time()
        self.touch()

    def advance(self, progress: int, step: Optional[str] = None) -> bool:
        """Raise progress, never lower it. Returns True if anything changed."""
        target = max(self.progress, min(100, int(progress)))
        changed = target != self.progress or (step is not None and step != self.step)
        self.progress = target
        if step is not None:
            self.step = step
        if changed:
            self.touch()
        return changed

    def reset_for_recovery(self) -> None:
        """Interrupted job found at startup: back to a fresh queued state."""
        self.status = JobStatus.QUEUED
        self.progress = 0
        self.step = STAGE_QUEUED.name
        self.result = None
        self.cancel_requested = False
        self.cancel_reason = None
        self.started_at = None
        self.touch()

    def touch(self) -> None:
        self.updated_at = time.time()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "progress": self.progress,
            "step": self.step,
            "result": self.result,
            "cancelRequested": self.cancel_requested,
            "cancelReason": self.cancel_reason,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "startedAt": self.started_at,
        }

    def to_row(self) -> Dict[str, Any]:
        """Flat row for the jobs table; payload and result become JSON text."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "progress": self.progress,
            "step": self.step,
            "payload": json.dumps(self.payload, default=str),
            "result": json.dumps(self.result, default=str) if self.result is not None else None,
            "cancel_requested": 1 if self.cancel_requested else 0,
            "cancel_reason": self.cancel_reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Job":
        result = row.get("result")
        return cls(
            id=row["id"],
            kind=JobKind(row.get("kind") or JobKind.SCAN.value),
            status=JobStatus(row["status"]),
            progress=int(row.get("progress") or 0),
            step=row.get("step") or STAGE_QUEUED.name,
            payload=json.loads(row.get("payload") or "{}"),
            result=json.loads(result) if result else None,
            cancel_requested=bool(row.get("cancel_requested")),
            cancel_reason=row.get("cancel_reason"),
            created_at=float(row.get("created_at") or time.time()),
            updated_at=float(row.get("updated_at") or time.time()),
            started_at=row.get("started_at"),
        )
