"""
Dramatiq Worker Entrypoint

This module serves as the entry point for Dramatiq workers.
It imports all actor modules to register them with the broker.

Usage:
    dramatiq fixbot.worker --processes 2 --threads 1 --verbose

Procfile Configuration:
    worker: dramatiq fixbot.worker --processes 2 --threads 1 --verbose

Actors are coroutines running on one event loop per process, so a single
thread per process is enough: concurrency comes from awaiting I/O.
"""

import structlog

from fixbot.services.monitoring.error_tracking import init_sentry
from fixbot.services.monitoring.logging import configure_logging, setup_logging

# Configure logging for worker
configure_logging()
setup_logging()
logger = structlog.get_logger()

init_sentry()

# Import actors to register them with the broker
from fixbot.actors import broker  # noqa: E402
from fixbot.actors import message_processor  # noqa: F401,E402

# Worker health check log
logger.info("worker_ready", broker=type(broker).__name__)
