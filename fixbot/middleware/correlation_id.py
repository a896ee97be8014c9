"""
Correlation ID Middleware
Provides correlation ID injection for request tracing across the processing pipeline
"""

import secrets
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id

__all__ = [
    "CorrelationIdMiddleware",
    "get_correlation_id",
    "new_correlation_id",
    "bind_correlation_id",
    "correlation_scope",
]


def new_correlation_id() -> str:
    """
    Generate a correlation ID for work that did not arrive over HTTP.

    Format: YYYYMMDD-HHMMSS-XXXXXX (UTC timestamp, 6 random hex chars)
    """
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"{stamp}-{secrets.token_hex(3).upper()}"


def get_correlation_id() -> str:
    """
    Get current correlation ID from async context.

    Returns:
        str: The correlation ID or 'none' if not available
    """
    return correlation_id.get() or 'none'


def bind_correlation_id(value: Optional[str] = None) -> str:
    """
    Set the correlation ID for the current async context.

    Used by Dramatiq actors and dead-letter replay, where there is no HTTP
    request to carry one.

    Args:
        value: Existing correlation ID to re-bind, or None to generate one

    Returns:
        The bound correlation ID
    """
    value = value or new_correlation_id()
    correlation_id.set(value)
    return value


@contextmanager
def correlation_scope(value: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation ID for the duration of a block, restoring the previous one."""
    token = correlation_id.set(value or new_correlation_id())
    try:
        yield correlation_id.get()
    finally:
        correlation_id.reset(token)
