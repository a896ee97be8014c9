"""
Runtime Container
Builds every core service once per process and hands out references

The API process keeps its Runtime on `app.state.runtime`; the Dramatiq worker
builds its own lazily inside the worker event loop.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

import httpx
import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from fixbot.config import Settings
from fixbot.services.alerting import AlertNotifier
from fixbot.services.background import DetachedTasks
from fixbot.services.dead_letter import DeadLetterQueue
from fixbot.services.deduplication import DedupCache, DeduplicationGate
from fixbot.services.dlq_processor import DeadLetterSweeper
from fixbot.services.handlers import SessionRecordingHandler
from fixbot.services.monitoring.circuit_breakers import (
    BreakerAlertListener,
    BreakerConfig,
    CircuitBreakerRegistry,
)
from fixbot.services.pipeline import MessageHandler, MessagePipeline
from fixbot.services.rate_limiter import DistributedRateLimiter, SlidingWindowRateLimiter
from fixbot.services.session_state import SessionStore
from fixbot.services.whatsapp_client import WhatsAppClient

logger = structlog.get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    session_factory: async_sessionmaker
    http_client: httpx.AsyncClient
    redis: Optional[Any]
    tasks: DetachedTasks
    breakers: CircuitBreakerRegistry
    notifier: AlertNotifier
    channel: WhatsAppClient
    dedup_gate: DeduplicationGate
    sessions: SessionStore
    rate_limiter: DistributedRateLimiter
    dead_letters: DeadLetterQueue
    pipeline: MessagePipeline
    sweeper: DeadLetterSweeper

    async def diagnostics(self) -> Dict[str, Any]:
        """Read-only stats for every component."""
        try:
            dead_letters = await self.dead_letters.stats()
        except Exception as e:
            logger.error("diagnostics_dead_letter_stats_failed", error=str(e))
            dead_letters = {"error": "unavailable"}

        return {
            "deduplication": self.dedup_gate.stats(),
            "circuit_breakers": self.breakers.stats(),
            "dead_letters": dead_letters,
            "dead_letter_sweeper": self.sweeper.stats(),
            "rate_limiter": self.rate_limiter.stats(),
            "sessions": self.sessions.stats(),
            "pipeline": self.pipeline.stats(),
            "alerts": self.notifier.stats(),
            "detached_tasks": {"pending": self.tasks.pending, "failed": self.tasks.failed},
        }

    async def close(self) -> None:
        await self.tasks.drain(timeout=5.0)
        await self.http_client.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        logger.info("runtime_closed")


def build_runtime(
    settings: Settings,
    session_factory: async_sessionmaker,
    http_client: Optional[httpx.AsyncClient] = None,
    redis=None,
    handler: Optional[MessageHandler] = None,
) -> Runtime:
    """
    Wire the core services together.

    Args:
        settings: Application settings
        session_factory: async_sessionmaker for the durable store
        http_client: Shared httpx client (created if omitted)
        redis: redis.asyncio client; created from REDIS_URL if omitted and configured
        handler: Business handler (defaults to SessionRecordingHandler)

    Returns:
        Runtime
    """
    http_client = http_client or httpx.AsyncClient()
    if redis is None and settings.redis_url:
        redis = aioredis.from_url(settings.redis_url, decode_responses=True, socket_timeout=2, socket_connect_timeout=2)

    tasks = DetachedTasks()
    breakers = CircuitBreakerRegistry(
        default_config=BreakerConfig(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            success_threshold=settings.circuit_breaker_success_threshold,
            cooldown_seconds=settings.circuit_breaker_cooldown_seconds,
        )
    )
    notifier = AlertNotifier.from_settings(settings, http_client=http_client, breakers=breakers)
    breakers.add_listener(BreakerAlertListener(notifier, tasks))

    channel = WhatsAppClient.from_settings(settings, breakers, http_client)

    dedup_gate = DeduplicationGate(session_factory, DedupCache(ttl_seconds=settings.dedup_cache_ttl_seconds))
    sessions = SessionStore(
        session_factory,
        initial_state=settings.session_initial_state,
        max_attempts=settings.session_max_attempts,
        base_delay=settings.session_retry_base_delay_seconds,
        max_delay=settings.session_retry_max_delay_seconds,
    )
    rate_limiter = DistributedRateLimiter(
        redis,
        SlidingWindowRateLimiter(
            max_per_minute=settings.rate_limit_per_minute,
            max_per_hour=settings.rate_limit_per_hour,
            burst_window_seconds=settings.rate_limit_burst_window_seconds,
            burst_threshold=settings.rate_limit_burst_threshold,
        ),
        key_prefix=settings.rate_limit_key_prefix,
    )
    dead_letters = DeadLetterQueue(
        session_factory,
        max_retries=settings.dlq_max_retries,
        first_retry_delay_seconds=settings.dlq_first_retry_delay_seconds,
        backoff_base=settings.dlq_backoff_base,
    )
    pipeline = MessagePipeline(
        handler or SessionRecordingHandler(sessions),
        dedup_gate,
        rate_limiter,
        dead_letters,
        channel=channel,
        processing_timeout=settings.processing_timeout_seconds,
    )
    sweeper = DeadLetterSweeper(
        dead_letters,
        pipeline,
        notifier,
        batch_size=settings.dlq_batch_size,
        entry_timeout=settings.dlq_entry_timeout_seconds,
        freshness_window=timedelta(hours=settings.dlq_media_expiry_hours),
        alert_threshold=settings.dlq_alert_threshold,
        critical_threshold=settings.dlq_critical_threshold,
        claim_lease_seconds=settings.dlq_claim_lease_seconds,
    )

    logger.info(
        "runtime_built",
        rate_limiter="redis" if redis is not None else "local",
        channel_configured=channel.configured,
        alerts_webhook=bool(settings.alert_webhook_url),
    )

    return Runtime(
        settings=settings,
        session_factory=session_factory,
        http_client=http_client,
        redis=redis,
        tasks=tasks,
        breakers=breakers,
        notifier=notifier,
        channel=channel,
        dedup_gate=dedup_gate,
        sessions=sessions,
        rate_limiter=rate_limiter,
        dead_letters=dead_letters,
        pipeline=pipeline,
        sweeper=sweeper,
    )
