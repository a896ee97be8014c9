"""
Detached Tasks
Best-effort side effects that must never affect the caller's control flow
"""

import asyncio
from typing import Awaitable, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


class DetachedTasks:
    """
    Owner of fire-and-forget coroutines.

    Keeps a strong reference to every running task (the event loop only
    holds weak ones) and logs failures from a done-callback, so an error in
    a detached task is never raised into whoever spawned it.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self.failed = 0

    def spawn(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.failed += 1
            logger.error(
                "detached_task_failed",
                task=task.get_name(),
                error=str(error),
                error_type=type(error).__name__,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every task spawned so far (shutdown and tests)."""
        if not self._tasks:
            return
        done, still_pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            logger.warning("detached_tasks_cancelled", count=len(still_pending))
