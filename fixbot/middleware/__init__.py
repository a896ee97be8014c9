"""
Middleware Module
ASGI middleware and correlation context helpers
"""

from fixbot.middleware.correlation_id import (
    CorrelationIdMiddleware,
    get_correlation_id,
    new_correlation_id,
    bind_correlation_id,
    correlation_scope,
)

__all__ = [
    "CorrelationIdMiddleware",
    "get_correlation_id",
    "new_correlation_id",
    "bind_correlation_id",
    "correlation_scope",
]
