"""
Sentry Error Tracking
Provides error tracking with rich context for production debugging
"""

from typing import Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration

logger = structlog.get_logger(__name__)


def init_sentry() -> bool:
    """
    Initialize Sentry SDK with FastAPI integration.

    If SENTRY_DSN is not configured, logs warning and returns (disabled).

    Returns:
        True if Sentry was initialized
    """
    from fixbot.config import settings

    if settings.sentry_dsn is None:
        logger.warning("sentry_disabled", reason="dsn_not_configured")
        return False

    try:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.sentry_environment or settings.environment,
            traces_sample_rate=0.1,
            integrations=[
                FastApiIntegration(),
            ],
        )
    except Exception as e:
        logger.error("sentry_init_failed", error=str(e))
        return False

    logger.info(
        "sentry_initialized",
        environment=settings.sentry_environment or settings.environment,
        traces_sample_rate=0.1,
    )
    return True


def set_processing_context(
    message_id: Optional[str],
    message_type: str,
    stage: str,
    correlation_id: Optional[str] = None
) -> None:
    """
    Set Sentry context for the message currently being processed.

    Subject identifiers (phone numbers) are deliberately left out.

    Args:
        message_id: Channel message id
        message_type: Channel message type (text, interactive, image, ...)
        stage: Processing stage ("live", "replay", "queued")
        correlation_id: Optional correlation ID for request tracking
    """
    sentry_sdk.set_context("processing", {
        "message_id": message_id,
        "message_type": message_type,
        "stage": stage,
        "correlation_id": correlation_id or "none"
    })
    sentry_sdk.set_tag("message_type", message_type)
    sentry_sdk.set_tag("stage", stage)

    if correlation_id:
        sentry_sdk.set_tag("correlation_id", correlation_id)


def capture_exception(error: BaseException) -> None:
    """Report a handled exception. No-op when Sentry is not initialized."""
    sentry_sdk.capture_exception(error)
