"""
Queued Processing Actors

Inbound messages are handed to Dramatiq when PROCESSING_MODE=queue. Without
REDIS_URL a StubBroker is installed so actors can be imported and exercised
in-process.

Actors are coroutines: the AsyncIO middleware gives every worker process its
own event loop. Retries are owned by the dead letter queue, so actors are
declared with max_retries=0 and failed payloads never re-enter the broker.
"""

from typing import Optional

import dramatiq
import structlog
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AsyncIO

from fixbot.config import settings

logger = structlog.get_logger(__name__)

BROKER_NAMESPACE = "fixbot"
INBOUND_QUEUE = "inbound_messages"


def build_broker(redis_url: Optional[str]) -> dramatiq.Broker:
    """
    Create the broker for the given Redis URL and install it globally.

    Returns:
        RedisBroker when a URL is given, StubBroker otherwise
    """
    if redis_url:
        broker = RedisBroker(
            url=redis_url,
            namespace=BROKER_NAMESPACE,
            socket_timeout=5,
            socket_connect_timeout=5,
            heartbeat_timeout=30000,
            # Messages that die in the broker are only kept for inspection
            dead_message_ttl=86400000,
        )
    else:
        broker = StubBroker()

    broker.add_middleware(AsyncIO())
    dramatiq.set_broker(broker)
    logger.info("broker_configured", type=type(broker).__name__, namespace=BROKER_NAMESPACE)
    return broker


broker = build_broker(settings.redis_url)

from fixbot.actors.message_processor import process_inbound_message  # noqa: E402

__all__ = ["BROKER_NAMESPACE", "INBOUND_QUEUE", "broker", "build_broker", "process_inbound_message"]
