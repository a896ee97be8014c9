"""
Inbound Message Actor
Dramatiq actor that runs queued WhatsApp messages through the processing pipeline
"""

import asyncio
from typing import Any, Dict, Optional

import dramatiq
import structlog

from fixbot.actors import INBOUND_QUEUE, broker
from fixbot.config import settings

logger = structlog.get_logger(__name__)

# Built lazily inside the worker's event loop; shared by every message in the process
_runtime = None
_runtime_lock: Optional[asyncio.Lock] = None


async def get_worker_runtime():
    """
    Build the worker's Runtime on first use.

    Returns:
        Runtime, or None when DATABASE_URL is not configured
    """
    global _runtime, _runtime_lock

    if _runtime is not None:
        return _runtime

    if _runtime_lock is None:
        _runtime_lock = asyncio.Lock()

    async with _runtime_lock:
        if _runtime is None:
            # Lazy imports to avoid circular dependencies
            from fixbot.database import init_db
            from fixbot.services.runtime import build_runtime

            session_factory = init_db()
            if session_factory is None:
                logger.error("worker_runtime_unavailable", reason="database_not_configured")
                return None
            _runtime = build_runtime(settings, session_factory)
            logger.info("worker_runtime_built")

    return _runtime


async def shutdown_worker_runtime() -> None:
    global _runtime
    if _runtime is not None:
        await _runtime.close()
        _runtime = None


async def run_queued_message(runtime, payload: Dict[str, Any], correlation_id: Optional[str] = None) -> str:
    """
    Validate a queued payload and run it through the runtime's pipeline.

    Queued messages get a longer budget than live webhook traffic
    (QUEUED_PROCESSING_TIMEOUT_SECONDS, 4 minutes by default).

    Returns:
        Processing outcome value
    """
    # Lazy imports to avoid circular dependencies
    from fixbot.models.webhook_schemas import InboundMessage

    message = InboundMessage.model_validate(payload)
    logger.info("process_inbound_message_started", message_id=message.message_id, correlation_id=correlation_id)

    result = await runtime.pipeline.process(
        message,
        correlation_id,
        timeout=settings.queued_processing_timeout_seconds,
        stage="queued",
    )

    logger.info(
        "process_inbound_message_completed",
        message_id=message.message_id,
        outcome=result.outcome.value,
        dead_letter_id=result.dead_letter_id,
    )
    return result.outcome.value


@dramatiq.actor(
    broker=broker,
    max_retries=0,  # Failures are dead-lettered by the pipeline and replayed by the sweeper
    time_limit=int((settings.queued_processing_timeout_seconds + 30) * 1000),
    queue_name=INBOUND_QUEUE
)
async def process_inbound_message(payload: Dict[str, Any], correlation_id: Optional[str] = None) -> str:
    """
    Process one queued inbound message.

    Args:
        payload: InboundMessage serialized with model_dump(mode="json")
        correlation_id: Correlation ID of the webhook request that enqueued it

    Raises:
        RuntimeError: If the worker has no database (message stays in the
        broker's dead-letter queue)
    """
    runtime = await get_worker_runtime()
    if runtime is None:
        raise RuntimeError("Worker runtime unavailable: DATABASE_URL not set")
    return await run_queued_message(runtime, payload, correlation_id)
