"""
Timeout Budget
One deadline per unit of work, shared by every nested operation
"""

import asyncio
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Awaitable, Callable, Iterator, Optional, TypeVar

import structlog

from fixbot.errors import ProcessingTimeout

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Below this many seconds of budget an operation is not worth starting
MIN_OPERATION_SECONDS = 1.0

_current_budget: ContextVar[Optional["TimeoutBudget"]] = ContextVar("timeout_budget", default=None)


class TimeoutBudget:
    """
    Deadline for one unit of work.

    Nested steps ask for `effective_timeout(requested)` so that a slow
    inner call can never run past the overall deadline.
    """

    def __init__(self, total_seconds: float, operation_id: str = "unit", clock: Callable[[], float] = time.monotonic):
        self.total_seconds = total_seconds
        self.operation_id = operation_id
        self._clock = clock
        self._started = clock()

    def elapsed(self) -> float:
        return self._clock() - self._started

    def remaining(self) -> float:
        return max(0.0, self.total_seconds - self.elapsed())

    def is_expired(self) -> bool:
        return self.remaining() <= 0

    def effective_timeout(self, requested: Optional[float] = None, min_threshold: float = MIN_OPERATION_SECONDS) -> float:
        """
        Timeout to use for a nested operation.

        Args:
            requested: The operation's own timeout, if any
            min_threshold: Minimum remaining budget worth starting with

        Returns:
            min(requested, remaining), or 0 if the remaining budget is below min_threshold
        """
        remaining = self.remaining()
        if remaining < min_threshold:
            return 0.0
        if requested is None:
            return remaining
        return min(requested, remaining)

    def __repr__(self):
        return f"<TimeoutBudget({self.operation_id}, remaining={self.remaining():.2f}s/{self.total_seconds}s)>"


def current_budget() -> Optional[TimeoutBudget]:
    return _current_budget.get()


@contextmanager
def budget_scope(budget: TimeoutBudget) -> Iterator[TimeoutBudget]:
    """Install `budget` as the current budget for the enclosed block."""
    token = _current_budget.set(budget)
    try:
        yield budget
    finally:
        _current_budget.reset(token)


async def with_timeout(awaitable: Awaitable[T], requested: Optional[float], operation: str) -> T:
    """
    Await `awaitable` within min(requested, remaining budget).

    Args:
        awaitable: Coroutine to run
        requested: Operation timeout in seconds (None = only the budget applies)
        operation: Name used in the timeout error and logs

    Returns:
        The awaitable's result

    Raises:
        ProcessingTimeout: Budget exhausted before starting, or the wait timed out
    """
    budget = current_budget()
    timeout = requested
    if budget is not None:
        timeout = budget.effective_timeout(requested)
        if timeout <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            logger.warning("timeout_budget_exhausted", operation=operation, budget=budget.operation_id)
            raise ProcessingTimeout(operation, budget.total_seconds)

    if timeout is None:
        return await awaitable

    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("operation_timed_out", operation=operation, timeout_seconds=timeout)
        raise ProcessingTimeout(operation, timeout) from None
