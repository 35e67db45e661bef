"""Structured error taxonomy for compatscan."""
#
# PURPOSE:
# Gives every failure that can leave the engine a stable code, a message and an
# HTTP status, so the API layer, the job result and the logs all agree on it.
#
# ERROR CODE FORMAT:
# - JOB_XXX: Scheduler / lifecycle errors
# - ACQ_XXX: Workspace acquisition errors (fatal for the job)
# - ANALYSIS_XXX: Per-file analyzer errors (file is skipped)
# - DB_XXX: Persistence errors (logged, job proceeds)
# - CONFIG_XXX: Configuration errors
#
# USAGE:
#   from compatscan.errors import AcquisitionError, ErrorCode
#
#   raise AcquisitionError(
#       ErrorCode.ACQ_PATH_NOT_FOUND,
#       "Local path not found or inaccessible: /tmp/x",
#       details={"path": "/tmp/x"},
#   )
#
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    # Job lifecycle
    JOB_NOT_FOUND = "JOB_001"
    JOB_ALREADY_TERMINAL = "JOB_002"
    JOB_PIPELINE_CRASHED = "JOB_003"

    # Workspace acquisition
    ACQ_EMPTY_PATH = "ACQ_001"
    ACQ_PATH_NOT_FOUND = "ACQ_002"
    ACQ_NOT_A_DIRECTORY = "ACQ_003"
    ACQ_ACCESS_DENIED = "ACQ_004"
    ACQ_ARCHIVE_INVALID = "ACQ_005"
    ACQ_CLONE_FAILED = "ACQ_006"
    ACQ_NO_SOURCE = "ACQ_007"

    # Analysis
    ANALYSIS_FILE_FAILED = "ANALYSIS_001"

    # Database
    DB_CONNECTION_FAILED = "DB_001"
    DB_WRITE_FAILED = "DB_002"
    DB_READ_FAILED = "DB_003"

    # Config
    CONFIG_INVALID_CONCURRENCY = "CONFIG_001"

    # System
    SYSTEM_INTERNAL_ERROR = "SYSTEM_001"


class CompatScanError(Exception):
    """
    Base exception with structured error information.

    Attributes:
        code: ErrorCode enum value
        message: Human-readable error message
        details: Optional dictionary with additional context
        http_status: Suggested HTTP status code for API responses
    """

    HTTP_STATUS_MAP: Dict[ErrorCode, int] = {
        ErrorCode.JOB_NOT_FOUND: 404,
        ErrorCode.JOB_ALREADY_TERMINAL: 409,
        ErrorCode.JOB_PIPELINE_CRASHED: 500,

        ErrorCode.ACQ_EMPTY_PATH: 400,
        ErrorCode.ACQ_PATH_NOT_FOUND: 404,
        ErrorCode.ACQ_NOT_A_DIRECTORY: 400,
        ErrorCode.ACQ_ACCESS_DENIED: 403,
        ErrorCode.ACQ_ARCHIVE_INVALID: 400,
        ErrorCode.ACQ_CLONE_FAILED: 502,
        ErrorCode.ACQ_NO_SOURCE: 400,

        ErrorCode.ANALYSIS_FILE_FAILED: 500,

        ErrorCode.DB_CONNECTION_FAILED: 503,
        ErrorCode.DB_WRITE_FAILED: 500,
        ErrorCode.DB_READ_FAILED: 500,

        ErrorCode.CONFIG_INVALID_CONCURRENCY: 500,

        ErrorCode.SYSTEM_INTERNAL_ERROR: 500,
    }

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        http_status: Optional[int] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.http_status = http_status or self.HTTP_STATUS_MAP.get(code, 500)

        # Build exception message with code for easy debugging
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "http_status": self.http_status,
        }


class AcquisitionError(CompatScanError):
    """Workspace could not be resolved. Fatal for the job, never retried."""


class AnalysisError(CompatScanError):
    """A single file could not be analyzed. The file is skipped."""


class PersistenceError(CompatScanError):
    """A durable write or read failed. Logged; the in-memory state stays authoritative."""


class SchedulerConfigurationError(CompatScanError):
    """Invalid concurrency setting. Corrected to the default by the caller."""


class CancellationSignal(Exception):
    """
    Cooperative unwind of a running job.

    Not a failure: the pipeline converts it into a ``cancelled`` terminal
    state carrying ``reason`` ("user", "timeout", "removed"). A "shutdown"
    unwind sends the job back to queued instead.
    """

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(reason)


# ============================================================================
# Convenience Functions
# ============================================================================

def serialize_error(error: BaseException) -> Dict[str, Any]:
    """Flatten an exception into the shape stored on failed job results."""
    if isinstance(error, CompatScanError):
        return {"name": type(error).__name__, "message": error.message, "code": error.code.value}
    return {
        "name": type(error).__name__,
        "message": str(error) or type(error).__name__,
        "code": ErrorCode.SYSTEM_INTERNAL_ERROR.value,
    }


__all__ = [
    "ErrorCode",
    "CompatScanError",
    "AcquisitionError",
    "AnalysisError",
    "PersistenceError",
    "SchedulerConfigurationError",
    "CancellationSignal",
    "serialize_error",
]
