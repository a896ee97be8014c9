"""
Monitoring Module
Exports for structured logging, circuit breakers and error tracking
"""

from fixbot.services.monitoring.logging import setup_logging, configure_logging, CorrelationJsonFormatter
from fixbot.services.monitoring.circuit_breakers import (
    BreakerAlertListener,
    BreakerConfig,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    SERVICE_BREAKER_CONFIGS,
)
from fixbot.services.monitoring.error_tracking import init_sentry, capture_exception, set_processing_context

__all__ = [
    "setup_logging",
    "configure_logging",
    "CorrelationJsonFormatter",
    "BreakerAlertListener",
    "BreakerConfig",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "SERVICE_BREAKER_CONFIGS",
    "init_sentry",
    "capture_exception",
    "set_processing_context",
]
