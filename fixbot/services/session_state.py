"""
Session State Store
Optimistic concurrency control for per-subject conversation state

Every write is one conditional UPDATE:

    UPDATE chat_sessions
       SET state_code = ..., data = ..., version = version + 1, last_activity_at = now
     WHERE subject = :subject AND version = :expected_version

Zero affected rows means another delivery for the same subject won the race;
the caller gets ConcurrencyConflict and must retry with freshly read state.
"""

import asyncio
import random
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from fixbot.database import as_utc, dialect_insert, run_with_retry, utcnow
from fixbot.errors import ConcurrencyConflict
from fixbot.models.chat_session import ChatSession

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of a session at a given version."""
    subject: str
    state_code: str
    data: Dict[str, Any] = field(default_factory=dict)
    equipment_id: Optional[int] = None
    version: int = 0
    updated_at: Optional[datetime] = None

    def evolve(self, **changes) -> "SessionSnapshot":
        """Copy with changes; the version is left for the store to bump."""
        return replace(self, **changes)


SessionTransform = Callable[[SessionSnapshot], SessionSnapshot]


def compute_backoff(
    attempt: int,
    base_delay: float = 0.05,
    max_delay: float = 1.0,
    jitter: float = 0.25,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Exponential backoff with jitter for conflict retries.

    Args:
        attempt: Zero-based retry attempt
        base_delay: Delay for the first retry, seconds
        max_delay: Cap before jitter, seconds
        jitter: Fractional jitter (0.25 = +/-25%)
        rng: Random source (injectable for tests)

    Returns:
        Delay in seconds, never negative
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    spread = delay * jitter
    return max(0.0, delay + (rng or random).uniform(-spread, spread))


class SessionStore:
    """
    Read and conditionally write per-subject sessions.

    Args:
        session_factory: async_sessionmaker for the durable store
        initial_state: State code for sessions created on first contact
        max_attempts: Attempts for update() before ConcurrencyConflict propagates
        base_delay: Backoff base in seconds
        max_delay: Backoff cap in seconds
        jitter: Fractional backoff jitter
        sleep: Awaitable sleep (injectable for tests)
        rng: Random source for jitter
        clock: Wall clock for activity timestamps
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        initial_state: str = "START",
        max_attempts: int = 3,
        base_delay: float = 0.05,
        max_delay: float = 1.0,
        jitter: float = 0.25,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.initial_state = initial_state
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock
        self.logger = logger.bind(service="session_state")

        self.writes = 0
        self.conflicts = 0
        self.exhausted = 0

    async def read(self, subject: str) -> SessionSnapshot:
        """
        Read the current session, creating it on first contact.

        Creation is insert-if-absent, so two first deliveries racing on a
        new subject both end up reading the same row.
        """
        now = self._clock()

        async def load() -> ChatSession:
            async with self.session_factory() as session:
                stmt = dialect_insert(session, ChatSession).values(
                    subject=subject,
                    state_code=self.initial_state,
                    data={},
                    version=0,
                    created_at=now,
                    last_activity_at=now,
                ).on_conflict_do_nothing(index_elements=["subject"])
                created = await session.execute(stmt)
                await session.commit()
                if created.rowcount:
                    self.logger.info("session_created", subject=subject, state_code=self.initial_state)

                row = (await session.execute(
                    select(ChatSession).where(ChatSession.subject == subject)
                )).scalar_one()
                return row

        row = await run_with_retry(load, name="session_read")
        return SessionSnapshot(
            subject=row.subject,
            state_code=row.state_code,
            data=dict(row.data or {}),
            equipment_id=row.equipment_id,
            version=row.version,
            updated_at=as_utc(row.last_activity_at),
        )

    async def write(
        self,
        subject: str,
        new_state: SessionSnapshot,
        expected_version: int,
        operation: str = "write",
    ) -> int:
        """
        Conditionally write a session.

        Args:
            subject: Session key
            new_state: Desired state (its version field is ignored)
            expected_version: Version the caller read
            operation: Name carried by ConcurrencyConflict

        Returns:
            The new version (expected_version + 1)

        Raises:
            ConcurrencyConflict: Stored version no longer equals expected_version
        """
        now = self._clock()

        async def conditional_update() -> int:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(ChatSession)
                    .where(ChatSession.subject == subject, ChatSession.version == expected_version)
                    .values(
                        state_code=new_state.state_code,
                        data=new_state.data,
                        equipment_id=new_state.equipment_id,
                        version=ChatSession.version + 1,
                        last_activity_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                return result.rowcount

        updated = await run_with_retry(conditional_update, name="session_write")
        if not updated:
            self.conflicts += 1
            self.logger.warning(
                "session_concurrency_conflict",
                subject=subject,
                expected_version=expected_version,
                operation=operation,
            )
            raise ConcurrencyConflict(subject, expected_version, operation)

        self.writes += 1
        self.logger.debug(
            "session_written",
            subject=subject,
            state_code=new_state.state_code,
            version=expected_version + 1,
            operation=operation,
        )
        return expected_version + 1

    async def update(self, subject: str, transform: SessionTransform, operation: str = "update") -> SessionSnapshot:
        """
        Read, transform and write with automatic conflict retry.

        `transform` must be pure: it is called again with fresh state after
        every conflict.

        Args:
            subject: Session key
            transform: Function from current snapshot to desired snapshot
            operation: Name for logs and ConcurrencyConflict

        Returns:
            The committed snapshot (with its new version)

        Raises:
            ConcurrencyConflict: Still conflicting after max_attempts
        """
        last_conflict: Optional[ConcurrencyConflict] = None

        for attempt in range(self.max_attempts):
            current = await self.read(subject)
            desired = transform(current)
            try:
                version = await self.write(subject, desired, current.version, operation=operation)
            except ConcurrencyConflict as conflict:
                last_conflict = conflict
                if attempt + 1 >= self.max_attempts:
                    break
                delay = compute_backoff(attempt, self.base_delay, self.max_delay, self.jitter, self._rng)
                self.logger.info(
                    "session_update_retry",
                    subject=subject,
                    operation=operation,
                    attempt=attempt + 1,
                    max_attempts=self.max_attempts,
                    delay_ms=round(delay * 1000),
                )
                await self._sleep(delay)
                continue

            if attempt > 0:
                self.logger.info("session_update_succeeded_after_retry", subject=subject, operation=operation, attempts=attempt + 1)
            return replace(desired, subject=subject, version=version, updated_at=self._clock())

        self.exhausted += 1
        self.logger.error(
            "session_update_exhausted",
            subject=subject,
            operation=operation,
            max_attempts=self.max_attempts,
        )
        raise last_conflict

    def stats(self) -> dict:
        return {
            "writes": self.writes,
            "conflicts": self.conflicts,
            "exhausted_retries": self.exhausted,
            "max_attempts": self.max_attempts,
        }


__all__ = ["SessionSnapshot", "SessionStore", "SessionTransform", "compute_backoff"]
