"""
Bounded fire-and-forget task queue

Used for best-effort side effects (cache hit counters, access timestamps)
that must never slow down or fail the caller. When the queue is full new
work is dropped with a warning instead of piling up.
"""
import asyncio
from typing import Awaitable, Set

import structlog

logger = structlog.get_logger()


class BackgroundTaskQueue:
    """Tracks pending asyncio tasks, bounded by max_pending."""

    def __init__(self, max_pending: int = 256):
        self.max_pending = max_pending
        self._tasks: Set[asyncio.Task] = set()
        self.dropped = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Awaitable, name: str = "background_task") -> bool:
        """
        Schedule a coroutine without awaiting it.

        Returns:
            True if scheduled, False if dropped because the queue is full
        """
        if len(self._tasks) >= self.max_pending:
            self.dropped += 1
            # Close the coroutine so it is not reported as never awaited
            close = getattr(coro, "close", None)
            if close:
                close()
            logger.warning("background_task_dropped", task=name, pending=len(self._tasks))
            return False

        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, name))
        return True

    def _on_done(self, task: asyncio.Task, name: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failed += 1
            logger.warning("background_task_failed", task=name, error=str(exc))

    async def drain(self) -> None:
        """Wait for all pending tasks (shutdown and tests)"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
