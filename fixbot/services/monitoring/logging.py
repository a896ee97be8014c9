"""
Structured JSON Logging with Correlation ID
Configures structlog and stdlib logging so every entry carries the correlation ID
"""

import logging
import sys
import os

import structlog
from pythonjsonlogger import jsonlogger
from asgi_correlation_id.context import correlation_id

SERVICE_NAME = "fixbot"


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter with automatic correlation ID injection.

    Extends python-json-logger to add correlation_id field to every log record.
    The correlation ID is retrieved from async context (set by CorrelationIdMiddleware
    for HTTP traffic, bind_correlation_id for actors and dead-letter replay).
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['correlation_id'] = correlation_id.get() or 'none'
        log_record['service'] = SERVICE_NAME
        log_record['environment'] = os.getenv('ENVIRONMENT', 'development')


def add_correlation_id(logger, method_name, event_dict):
    """structlog processor: attach the current correlation ID unless already bound."""
    event_dict.setdefault("correlation_id", correlation_id.get() or "none")
    return event_dict


def setup_logging(level: int = logging.INFO) -> logging.Handler:
    """
    Configure structured JSON logging to stdout for stdlib loggers.

    Libraries (uvicorn, sqlalchemy, apscheduler, dramatiq) log through the
    standard library; their records are rendered by CorrelationJsonFormatter.

    Returns:
        logging.Handler: The configured handler (for testing)
    """
    handler = logging.StreamHandler(sys.stdout)

    formatter = CorrelationJsonFormatter(
        '%(timestamp)s %(level)s %(name)s %(message)s',
        rename_fields={
            'timestamp': 'asctime',
            'level': 'levelname'
        }
    )
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    return handler


def configure_logging() -> None:
    """
    Configure structlog for event-style JSON logs.

    Called once by each process entry point (API app and Dramatiq worker).
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_correlation_id,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ]
    )
