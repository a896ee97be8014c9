"""
Dead Letter Queue
Durable record of inbound messages whose handler failed, with bounded
backoff-scheduled retries

Retry schedule (defaults): first retry 1 minute after the failure, then
base ** retry_count minutes (5, 25, ...) until max_retries is reached and the
entry is marked FAILED for good.
"""

import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update, delete
from sqlalchemy.ext.asyncio import async_sessionmaker

from fixbot.database import as_utc, dialect_insert, run_with_retry, utcnow
from fixbot.errors import error_code
from fixbot.models.dead_letter_message import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    DeadLetterMessage,
    DeadLetterStatus,
)
from fixbot.models.webhook_schemas import InboundMessage

logger = structlog.get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 1000
MAX_ERROR_STACK_LENGTH = 4000
# Optimistic retries for record_retry_failure when two sweepers touch one entry
MAX_RECORD_ATTEMPTS = 3


@dataclass(frozen=True)
class DeadLetterEntry:
    """Detached, read-only view of a dead_letter_messages row."""
    id: int
    message_id: str
    subject: str
    message_type: str
    payload: str
    correlation_id: Optional[str]
    error_message: Optional[str]
    error_code: Optional[str]
    retry_count: int
    max_retries: int
    next_retry_at: Optional[datetime]
    last_retry_at: Optional[datetime]
    status: str
    status_reason: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: DeadLetterMessage) -> "DeadLetterEntry":
        return cls(
            id=row.id,
            message_id=row.message_id,
            subject=row.subject,
            message_type=row.message_type,
            payload=row.payload,
            correlation_id=row.correlation_id,
            error_message=row.error_message,
            error_code=row.error_code,
            retry_count=row.retry_count,
            max_retries=row.max_retries,
            next_retry_at=as_utc(row.next_retry_at),
            last_retry_at=as_utc(row.last_retry_at),
            status=row.status,
            status_reason=row.status_reason,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    def to_message(self) -> InboundMessage:
        """Rebuild the original unit of work from the stored payload."""
        return InboundMessage.model_validate_json(self.payload)

    def to_dict(self) -> Dict[str, Any]:
        data = {k: getattr(self, k) for k in self.__dataclass_fields__ if k != "payload"}
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data


def _error_fields(error: BaseException) -> Dict[str, Optional[str]]:
    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return {
        "error_message": (str(error) or type(error).__name__)[:MAX_ERROR_MESSAGE_LENGTH],
        "error_code": error_code(error)[:100],
        "error_stack": stack[-MAX_ERROR_STACK_LENGTH:] if stack else None,
    }


class DeadLetterQueue:
    """
    CRUD and retry bookkeeping for dead-letter entries.

    Args:
        session_factory: async_sessionmaker for the durable store
        max_retries: Retry budget for new entries
        first_retry_delay_seconds: Delay before the first retry
        backoff_base: Minutes multiplier base for later retries
        clock: Wall clock (injectable for tests)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        max_retries: int = 3,
        first_retry_delay_seconds: int = 60,
        backoff_base: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.max_retries = max_retries
        self.first_retry_delay = timedelta(seconds=first_retry_delay_seconds)
        self.backoff_base = backoff_base
        self._clock = clock
        self.logger = logger.bind(service="dead_letter_queue")

        self.save_failures = 0

    def next_retry_delay(self, retry_count: int) -> timedelta:
        """Backoff after `retry_count` failed retries: base ** retry_count minutes."""
        return timedelta(minutes=self.backoff_base ** retry_count)

    async def save_failed(
        self,
        message: InboundMessage,
        error: BaseException,
        correlation_id: Optional[str] = None,
    ) -> Optional[int]:
        """
        Persist a failed unit of work.

        Never raises: the original failure is already being handled, and a
        second failure here must not mask it. Persistence errors are logged
        at critical level.

        Returns:
            Entry id (existing id if the message was already dead-lettered),
            or None if it could not be stored
        """
        try:
            return await self._insert(message, error, correlation_id)
        except Exception as e:
            self.save_failures += 1
            self.logger.critical(
                "dead_letter_save_failed",
                message_id=message.message_id,
                subject=message.subject,
                original_error=str(error),
                error=str(e),
                exc_info=True,
            )
            return None

    async def _insert(self, message: InboundMessage, error: BaseException, correlation_id: Optional[str]) -> int:
        now = self._clock()
        values = {
            "message_id": message.message_id,
            "subject": message.subject or "unknown",
            "message_type": message.message_type,
            "payload": message.model_dump_json(),
            "correlation_id": correlation_id,
            "retry_count": 0,
            "max_retries": self.max_retries,
            "next_retry_at": now + self.first_retry_delay,
            "status": DeadLetterStatus.PENDING.value,
            "created_at": now,
            "updated_at": now,
            **_error_fields(error),
        }

        async def insert() -> int:
            async with self.session_factory() as session:
                stmt = (
                    dialect_insert(session, DeadLetterMessage)
                    .values(**values)
                    .on_conflict_do_nothing(index_elements=["message_id"])
                    .returning(DeadLetterMessage.id)
                )
                entry_id = (await session.execute(stmt)).scalar_one_or_none()
                if entry_id is None:
                    entry_id = (await session.execute(
                        select(DeadLetterMessage.id).where(DeadLetterMessage.message_id == message.message_id)
                    )).scalar_one()
                    await session.commit()
                    self.logger.info("dead_letter_already_queued", message_id=message.message_id, entry_id=entry_id)
                    return entry_id
                await session.commit()
                return entry_id

        entry_id = await run_with_retry(insert, name="dead_letter_save")
        self.logger.warning(
            "dead_letter_saved",
            entry_id=entry_id,
            message_id=message.message_id,
            message_type=message.message_type,
            error_code=values["error_code"],
            next_retry_at=values["next_retry_at"].isoformat(),
        )
        return entry_id

    async def get(self, entry_id: int) -> Optional[DeadLetterEntry]:
        async with self.session_factory() as session:
            row = await session.get(DeadLetterMessage, entry_id)
            return DeadLetterEntry.from_row(row) if row else None

    async def record_retry_failure(self, entry_id: int, error: BaseException) -> Optional[DeadLetterEntry]:
        """
        Count a failed retry.

        retry_count + 1; when it reaches max_retries the entry becomes FAILED
        with no next retry, otherwise RETRYING with the next backoff. The
        write is conditional on the retry count that was read, so the count
        can never overshoot max_retries. Terminal entries are left untouched.

        Returns:
            The updated entry, or None if it no longer exists or is terminal
        """
        fields = _error_fields(error)

        for _ in range(MAX_RECORD_ATTEMPTS):
            entry = await self.get(entry_id)
            if entry is None or entry.status in TERMINAL_STATUSES:
                self.logger.warning("dead_letter_retry_on_inactive_entry", entry_id=entry_id,
                                    status=entry.status if entry else None)
                return None

            now = self._clock()
            retry_count = min(entry.retry_count + 1, entry.max_retries)
            exhausted = retry_count >= entry.max_retries
            status = DeadLetterStatus.FAILED.value if exhausted else DeadLetterStatus.RETRYING.value
            next_retry_at = None if exhausted else now + self.next_retry_delay(retry_count)

            async with self.session_factory() as session:
                result = await session.execute(
                    update(DeadLetterMessage)
                    .where(
                        DeadLetterMessage.id == entry_id,
                        DeadLetterMessage.retry_count == entry.retry_count,
                        DeadLetterMessage.status.in_(ACTIVE_STATUSES),
                    )
                    .values(
                        retry_count=retry_count,
                        status=status,
                        next_retry_at=next_retry_at,
                        last_retry_at=now,
                        updated_at=now,
                        **fields,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

            if result.rowcount:
                log = self.logger.error if exhausted else self.logger.warning
                log(
                    "dead_letter_retry_failed",
                    entry_id=entry_id,
                    retry_count=retry_count,
                    max_retries=entry.max_retries,
                    status=status,
                    next_retry_at=next_retry_at.isoformat() if next_retry_at else None,
                    error=fields["error_message"],
                )
                return await self.get(entry_id)

        self.logger.warning("dead_letter_retry_record_contended", entry_id=entry_id)
        return None

    async def mark_processed(self, entry_id: int) -> bool:
        """Terminal success."""
        now = self._clock()
        done = await self._finish(entry_id, DeadLetterStatus.PROCESSED, reason=None, processed_at=now)
        if done:
            self.logger.info("dead_letter_processed", entry_id=entry_id)
        return done

    async def mark_skipped(self, entry_id: int, reason: str) -> bool:
        """Terminal skip: retrying is pointless (e.g. the referenced media expired)."""
        done = await self._finish(entry_id, DeadLetterStatus.SKIPPED, reason=reason[:500], processed_at=None)
        if done:
            self.logger.info("dead_letter_skipped", entry_id=entry_id, reason=reason)
        return done

    async def _finish(self, entry_id: int, status: DeadLetterStatus, reason: Optional[str], processed_at) -> bool:
        now = self._clock()
        async with self.session_factory() as session:
            result = await session.execute(
                update(DeadLetterMessage)
                .where(DeadLetterMessage.id == entry_id, DeadLetterMessage.status.in_(ACTIVE_STATUSES))
                .values(
                    status=status.value,
                    status_reason=reason,
                    next_retry_at=None,
                    processed_at=processed_at,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return bool(result.rowcount)

    async def fetch_due(self, limit: int = 10) -> List[DeadLetterEntry]:
        """
        Entries ready for a retry, oldest first.

        PENDING/RETRYING, next_retry_at <= now, retry budget left.
        """
        now = self._clock()
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(DeadLetterMessage)
                .where(
                    DeadLetterMessage.status.in_(ACTIVE_STATUSES),
                    DeadLetterMessage.next_retry_at.is_not(None),
                    DeadLetterMessage.next_retry_at <= now,
                    DeadLetterMessage.retry_count < DeadLetterMessage.max_retries,
                )
                .order_by(DeadLetterMessage.created_at.asc(), DeadLetterMessage.id.asc())
                .limit(limit)
            )).scalars().all()
            return [DeadLetterEntry.from_row(row) for row in rows]

    async def claim(self, entry: DeadLetterEntry, lease_seconds: float) -> bool:
        """
        Take a due entry for replay.

        Pushes next_retry_at out by the lease, conditional on the entry still
        being due with the retry count that was read. Exactly one of several
        concurrent sweepers gets a row back; the others must leave the entry
        alone. If the claimant dies mid-replay the entry becomes due again
        once the lease runs out.

        Returns:
            True if this caller now owns the replay
        """
        now = self._clock()
        async with self.session_factory() as session:
            result = await session.execute(
                update(DeadLetterMessage)
                .where(
                    DeadLetterMessage.id == entry.id,
                    DeadLetterMessage.status.in_(ACTIVE_STATUSES),
                    DeadLetterMessage.retry_count == entry.retry_count,
                    DeadLetterMessage.next_retry_at.is_not(None),
                    DeadLetterMessage.next_retry_at <= now,
                )
                .values(next_retry_at=now + timedelta(seconds=lease_seconds), updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if not result.rowcount:
            self.logger.info("dead_letter_claim_lost", entry_id=entry.id)
            return False
        return True

    async def list_entries(self, status: Optional[str] = None, limit: int = 50) -> List[DeadLetterEntry]:
        async with self.session_factory() as session:
            query = select(DeadLetterMessage).order_by(DeadLetterMessage.created_at.desc()).limit(limit)
            if status:
                query = query.where(DeadLetterMessage.status == status.upper())
            rows = (await session.execute(query)).scalars().all()
            return [DeadLetterEntry.from_row(row) for row in rows]

    async def cleanup(self, days_to_keep: int = 7) -> int:
        """
        Delete terminal entries older than the retention window.

        Returns:
            Number of entries deleted
        """
        cutoff = self._clock() - timedelta(days=days_to_keep)
        async with self.session_factory() as session:
            result = await session.execute(
                delete(DeadLetterMessage)
                .where(
                    DeadLetterMessage.status.in_(TERMINAL_STATUSES),
                    DeadLetterMessage.created_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        deleted = result.rowcount or 0
        self.logger.info("dead_letter_cleanup_complete", deleted_count=deleted, days_to_keep=days_to_keep)
        return deleted

    async def stats(self, days: int = 7) -> Dict[str, Dict[str, float]]:
        """
        Entry counts and average retries by status, for entries created in the last `days`.
        """
        since = self._clock() - timedelta(days=days)
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(
                    DeadLetterMessage.status,
                    func.count(DeadLetterMessage.id),
                    func.avg(DeadLetterMessage.retry_count),
                )
                .where(DeadLetterMessage.created_at >= since)
                .group_by(DeadLetterMessage.status)
            )).all()

        by_status = {status.value: {"count": 0, "avg_retries": 0.0} for status in DeadLetterStatus}
        for status, count, avg_retries in rows:
            by_status[status] = {"count": count, "avg_retries": round(float(avg_retries or 0), 2)}
        return by_status


__all__ = ["DeadLetterEntry", "DeadLetterQueue"]
