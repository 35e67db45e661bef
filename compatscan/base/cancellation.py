"""Cooperative cancellation token threaded through the pipeline."""

from __future__ import annotations

import threading
from typing import Optional

from compatscan.errors import CancellationSignal


class CancellationToken:
    """
    One-shot cancellation flag for a single job run.

    Backed by a threading.Event so a request can come from the event loop,
    a timer callback or a worker thread. The first reason wins; later
    requests are ignored.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "user") -> bool:
        """Request cancellation. Returns False if it was already requested."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_requested(self) -> None:
        """Checkpoint: unwind the current job if cancellation was requested."""
        if self._event.is_set():
            raise CancellationSignal(self._reason or "cancelled")
