"""Typed lifecycle events and the in-process bus that fans them out."""
#
# PURPOSE:
# Decouples the engine (scheduler, pipeline) from whoever watches it
# (pollers, SSE streams, the CLI, tests).
#
# LOGIC:
# - Four frozen event types form a closed union (LifecycleEvent).
# - EventBus.emit stamps a sequence number and delivers synchronously,
#   in emission order, to a snapshot of the current subscribers.
# - EventBus.stream adapts the push model to an async generator for SSE.
#
# Events are not durable: anything emitted with no subscribers is lost.
#

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
import time
from dataclasses import asdict, dataclass, field, replace
from typing import Any, AsyncIterator, Callable, ClassVar, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    kind: ClassVar[str] = "progress"

    job_id: str
    progress: int
    step: str
    eta_ms: Optional[int] = None
    sequence: int = 0
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class DoneEvent:
    """Terminal event. Fired for done, failed and cancelled jobs alike."""
    kind: ClassVar[str] = "done"

    job_id: str
    result: Optional[Dict[str, Any]] = None
    sequence: int = 0
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class FailedEvent:
    kind: ClassVar[str] = "failed"

    job_id: str
    error: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RemovedEvent:
    kind: ClassVar[str] = "removed"

    job_id: str
    sequence: int = 0
    timestamp: float = field(default_factory=time.time)


LifecycleEvent = Union[ProgressEvent, DoneEvent, FailedEvent, RemovedEvent]
EventHandler = Callable[[LifecycleEvent], None]

TERMINAL_EVENT_KINDS = frozenset({DoneEvent.kind, RemovedEvent.kind})


def event_to_dict(event: LifecycleEvent) -> Dict[str, Any]:
    """Flatten an event for JSON transport (SSE data, CLI output)."""
    data = asdict(event)
    data["type"] = event.kind
    return data


class EventBus:
    """
    Synchronous publish/subscribe fan-out.

    A handler that raises is logged and skipped; the remaining handlers
    still receive the event.
    """

    def __init__(self):
        self._subscribers: List[EventHandler] = []
        self._lock = threading.Lock()
        self._sequence = itertools.count(1)
        self._last_sequence = 0

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler``. Returns a callable that unsubscribes it."""
        with self._lock:
            self._subscribers.append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(handler)

        return _unsubscribe

    def unsubscribe(self, handler: EventHandler) -> None:
        with self._lock:
            try:
                self._subscribers.remove(handler)
            except ValueError:
                pass

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    @property
    def last_sequence(self) -> int:
        return self._last_sequence

    def emit(self, event: LifecycleEvent) -> LifecycleEvent:
        """Stamp ``event`` with the next sequence number and deliver it."""
        with self._lock:
            seq = next(self._sequence)
            snapshot = list(self._subscribers)
        stamped = replace(event, sequence=seq)
        self._last_sequence = seq

        for handler in snapshot:
            try:
                handler(stamped)
            except Exception as e:
                logger.error(f"[EventBus] Subscriber failed on {stamped.kind} for {stamped.job_id}: {e}")
        return stamped

    async def stream(self, job_id: Optional[str] = None) -> AsyncIterator[LifecycleEvent]:
        """
        Async generator over live events, optionally scoped to one job.

        Each consumer gets its own queue. The subscription is dropped when
        the consumer stops iterating (client disconnect, break, aclose).
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def _forward(event: LifecycleEvent) -> None:
            if job_id is not None and event.job_id != job_id:
                return
            try:
                loop.call_soon_threadsafe(queue.put_nowait, event)
            except RuntimeError:
                # Loop closed; the finally below already ran or is about to.
                logger.debug("[EventBus] Dropping event for closed stream")

        unsubscribe = self.subscribe(_forward)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()
