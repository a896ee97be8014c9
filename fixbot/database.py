"""
Database Configuration and Session Management
Async SQLAlchemy engine, session factory and transient-fault retry
"""

import asyncio
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from fixbot.config import settings
from fixbot.errors import TransientDependencyError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Create SQLAlchemy engine
engine: Optional[AsyncEngine] = None
SessionLocal: Optional[async_sessionmaker] = None

TRANSIENT_DB_ERRORS = (OperationalError, InterfaceError, ConnectionError)


def normalize_database_url(url: str) -> str:
    """
    Point plain postgres URLs at the psycopg 3 driver.

    Args:
        url: Database URL from the environment

    Returns:
        URL usable by create_async_engine
    """
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def create_engine_for(url: str) -> AsyncEngine:
    """Create an async engine, pooling only where the driver supports it."""
    url = normalize_database_url(url)
    if url.startswith("sqlite"):
        return create_async_engine(url)
    return create_async_engine(
        url,
        pool_pre_ping=True,  # Verify connections before using them
        pool_size=5,
        max_overflow=10,
    )


def init_db() -> Optional[async_sessionmaker]:
    """Initialize database connection"""
    global engine, SessionLocal

    if not settings.database_url:
        logger.warning("database_not_configured", message="DATABASE_URL not set - durable features disabled")
        return None

    logger.info("database_connecting")
    engine = create_engine_for(settings.database_url)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    logger.info("database_connected", dialect=engine.dialect.name)
    return SessionLocal


async def close_db() -> None:
    """Dispose of the engine's pooled connections."""
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
        logger.info("database_disposed")
    engine = None
    SessionLocal = None


async def get_db() -> AsyncIterator[Optional[AsyncSession]]:
    """
    Dependency for getting database session (optional)
    Usage: db: AsyncSession = Depends(get_db)

    Yields None if the database is not configured.
    """
    if SessionLocal is None:
        yield None
        return

    async with SessionLocal() as session:
        yield session


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
) -> T:
    """
    Run a store operation, retrying transient connection faults.

    This is the store client's own retry layer, separate from the
    application-level retries (optimistic concurrency, dead-letter sweeps).
    Each attempt must open its own session so a broken connection is not
    reused.

    Args:
        operation: Zero-argument coroutine function performing the work
        name: Operation name for logging
        attempts: Maximum attempts (default from settings)
        base_delay: Initial backoff in seconds, doubled each attempt

    Returns:
        The operation's result

    Raises:
        TransientDependencyError: If every attempt hit a transient fault
    """
    attempts = attempts or settings.database_retry_attempts
    delay = settings.database_retry_delay_seconds if base_delay is None else base_delay

    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TRANSIENT_DB_ERRORS as e:
            last_error = e
            logger.warning(
                "database_transient_error",
                operation=name,
                attempt=attempt,
                max_attempts=attempts,
                error=str(e),
            )
            if attempt < attempts:
                await asyncio.sleep(delay * (2 ** (attempt - 1)))

    raise TransientDependencyError("database", f"{name} failed after {attempts} attempts: {last_error}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def dialect_insert(session: AsyncSession, table):
    """
    Return the dialect-specific INSERT construct supporting ON CONFLICT.

    PostgreSQL in production, SQLite in tests; both expose the same
    on_conflict_do_update / on_conflict_do_nothing API.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upserts not supported for dialect {dialect}")
    return insert(table)


# Base class for all models
Base = declarative_base()
