"""Serialized writer for durable job state."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from compatscan.errors import ErrorCode, PersistenceError

logger = logging.getLogger(__name__)


class BlackBox:
    """
    The persistence actor.

    Every durable write is funnelled through one queue and applied by a
    single worker task, so writes land in the order they were issued and
    SQLite never sees two writers.

    - Callers either fire-and-forget or await ``enqueue`` for confirmation.
    - A failing write is logged as a PersistenceError and never kills the loop.
    - ``shutdown`` refuses to return until the queue is drained.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None
        self._draining = False
        self._stopped = False
        self.failures = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def accepting(self) -> bool:
        return not (self._draining or self._stopped)

    def start(self) -> None:
        """Start the writer loop if not already running."""
        if self._worker_task is None or self._worker_task.done():
            self._draining = False
            self._stopped = False
            self._worker_task = asyncio.create_task(self._writer_loop(), name="BlackBox-Writer")
            logger.info("[BlackBox] Writer loop started.")

    async def _writer_loop(self) -> None:
        while not self._stopped:
            try:
                item = await self._queue.get()
            except asyncio.CancelledError:
                logger.info("[BlackBox] Loop cancelled.")
                break

            if item is None:
                self._queue.task_done()
                break

            func, args, kwargs, future = item
            try:
                result = await func(*args, **kwargs)
                if future and not future.done():
                    future.set_result(result)
            except asyncio.CancelledError:
                self._queue.task_done()
                raise
            except Exception as e:
                self.failures += 1
                err = PersistenceError(
                    ErrorCode.DB_WRITE_FAILED,
                    f"Write {getattr(func, '__name__', func)!s} failed: {e}",
                )
                logger.error(f"[BlackBox] {err}")
                if future and not future.done():
                    future.set_exception(err)
            self._queue.task_done()

    async def enqueue(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Schedule a write and wait until it has been applied.

        Raises:
            PersistenceError: the write failed or the writer is shutting down
        """
        if not self.accepting:
            raise PersistenceError(ErrorCode.DB_WRITE_FAILED, "Cannot write: writer is shutting down")
        if self._worker_task is None:
            self.start()

        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((func, args, kwargs, future))
        return await future

    def fire_and_forget(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> None:
        """Schedule a write without waiting for it."""
        if not self.accepting:
            logger.warning(f"[BlackBox] Drop write to {func.__name__}: draining/stopped.")
            return
        if self._worker_task is None:
            self.start()
        self._queue.put_nowait((func, args, kwargs, None))

    async def flush(self) -> None:
        """Wait until every write queued so far has been applied."""
        if self._worker_task is not None and not self._worker_task.done():
            await self._queue.join()

    async def shutdown(self) -> None:
        """
        Graceful shutdown protocol.
        1. Mark as draining (no new writes).
        2. Wait for the queue to empty.
        3. Stop the worker.
        """
        logger.info(f"[BlackBox] Initiating Shutdown. Pending writes: {self._queue.qsize()}")
        self._draining = True

        if self._worker_task is None or self._worker_task.done():
            self._stopped = True
            return

        self._queue.put_nowait(None)
        await self._queue.join()
        self._stopped = True

        try:
            await asyncio.wait_for(self._worker_task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("[BlackBox] Writer loop timed out during shutdown. Force cancelling.")
            self._worker_task.cancel()

        logger.info("[BlackBox] Shutdown Complete.")
