"""
Router initialization module.

Exports all API routers for the compatscan backend.
"""
from compatscan.server.routers import jobs, realtime, scans

__all__ = [
    "jobs",
    "realtime",
    "scans",
]
