"""
Deduplication Gate
Turns at-least-once channel delivery into effectively-once processing

Two layers:
- DedupCache: in-process TTL cache, answers repeat deliveries without I/O
- processed_messages table: atomic upsert that decides the winner when
  several instances (or concurrent deliveries) see the same message id first
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import async_sessionmaker

from fixbot.database import dialect_insert, run_with_retry, utcnow
from fixbot.models.processed_message import ProcessedMessage
from fixbot.models.webhook_schemas import InboundMessage

logger = structlog.get_logger(__name__)


class FailurePolicy(str, Enum):
    FAIL_OPEN = "fail_open"      # store down -> process anyway (risk: duplicate processing)
    FAIL_CLOSED = "fail_closed"  # store down -> treat as duplicate (risk: dropped message)


RATING_REPLY_PREFIX = "btn_rating_"

# Behaviour when the durable check itself fails, keyed by message kind.
# Kinds whose handlers have non-idempotent side effects fail closed.
DEDUP_FAILURE_POLICIES: Dict[str, FailurePolicy] = {
    "interactive.rating": FailurePolicy.FAIL_CLOSED,
}
DEFAULT_FAILURE_POLICY = FailurePolicy.FAIL_OPEN


def classify_message(message: InboundMessage) -> str:
    """
    Map an inbound message to the kind used for the failure policy lookup.

    Survey rating replies are split out from other interactive replies
    because recording a rating twice is not idempotent.
    """
    if message.message_type in ("interactive", "button") and (message.reply_id or "").startswith(RATING_REPLY_PREFIX):
        return "interactive.rating"
    return message.message_type


def failure_policy_for(kind: str, policies: Optional[Dict[str, FailurePolicy]] = None) -> FailurePolicy:
    table = DEDUP_FAILURE_POLICIES if policies is None else policies
    return table.get(kind, DEFAULT_FAILURE_POLICY)


@dataclass(frozen=True)
class DedupResult:
    is_duplicate: bool
    retry_count: int
    source: str  # "memory", "database", "store_error", "missing_id"


class DedupCache:
    """
    In-process TTL cache of recently accepted message ids.

    Each entry counts how many times the id was seen again, so the fast
    path can still report a retry count without touching the store.
    """

    def __init__(self, ttl_seconds: float = 1800, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, List[float]] = {}  # id -> [expires_at, seen_again]

    def hit(self, message_id: str) -> Optional[int]:
        """
        Look up a message id.

        Returns:
            Times the id has been seen again (>= 1), or None if absent/expired
        """
        entry = self._entries.get(message_id)
        if entry is None:
            return None
        if entry[0] <= self._clock():
            del self._entries[message_id]
            return None
        entry[1] += 1
        return int(entry[1])

    def add(self, message_id: str) -> None:
        self._entries[message_id] = [self._clock() + self.ttl_seconds, 0]

    def prune(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry[0] <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, message_id: str) -> bool:
        entry = self._entries.get(message_id)
        return entry is not None and entry[0] > self._clock()

    def __len__(self) -> int:
        return len(self._entries)


class DeduplicationGate:
    """
    Decides whether an inbound message was already accepted for processing.

    Args:
        session_factory: async_sessionmaker for the durable store
        cache: Process-local DedupCache (one per process)
        policies: Failure policy table (defaults to DEDUP_FAILURE_POLICIES)
        clock: Wall clock for stored timestamps
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        cache: Optional[DedupCache] = None,
        policies: Optional[Dict[str, FailurePolicy]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.cache = cache or DedupCache()
        self.policies = DEDUP_FAILURE_POLICIES if policies is None else policies
        self._clock = clock
        self.logger = logger.bind(service="deduplication")

        self.memory_hits = 0
        self.store_duplicates = 0
        self.store_errors = 0
        self.fail_closed = 0

    async def check(self, message_id: Optional[str], subject: str, message_kind: str = "text") -> DedupResult:
        """
        Check-and-register a message id.

        Args:
            message_id: Channel message id
            subject: Sender (stored on the record)
            message_kind: Kind from classify_message(), selects the failure policy

        Returns:
            DedupResult; retry_count is 0 on first sight and >= 1 afterwards
        """
        if not message_id:
            return DedupResult(is_duplicate=False, retry_count=0, source="missing_id")

        seen = self.cache.hit(message_id)
        if seen is not None:
            self.memory_hits += 1
            self.logger.info("duplicate_message", message_id=message_id, retry_count=seen, source="memory")
            return DedupResult(is_duplicate=True, retry_count=seen, source="memory")

        try:
            retry_count = await self._register(message_id, subject)
        except Exception as e:
            self.store_errors += 1
            policy = failure_policy_for(message_kind, self.policies)
            self.logger.error(
                "dedup_store_error",
                message_id=message_id,
                message_kind=message_kind,
                policy=policy.value,
                error=str(e),
            )
            if policy == FailurePolicy.FAIL_CLOSED:
                # Not cached: a redelivery after the store recovers gets a real check
                self.fail_closed += 1
                return DedupResult(is_duplicate=True, retry_count=0, source="store_error")
            self.cache.add(message_id)
            return DedupResult(is_duplicate=False, retry_count=0, source="store_error")

        self.cache.add(message_id)

        if retry_count > 0:
            self.store_duplicates += 1
            self.logger.info("duplicate_message", message_id=message_id, retry_count=retry_count, source="database")
            return DedupResult(is_duplicate=True, retry_count=retry_count, source="database")

        return DedupResult(is_duplicate=False, retry_count=0, source="database")

    async def _register(self, message_id: str, subject: str) -> int:
        """
        Atomic insert-or-increment.

        INSERT ... ON CONFLICT (message_id) DO UPDATE SET retry_count = retry_count + 1
        RETURNING retry_count. The single row winner sees 0.
        """
        now = self._clock()

        async def upsert() -> int:
            async with self.session_factory() as session:
                stmt = dialect_insert(session, ProcessedMessage).values(
                    message_id=message_id,
                    subject=subject,
                    retry_count=0,
                    first_seen_at=now,
                    last_seen_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["message_id"],
                    set_={
                        "retry_count": ProcessedMessage.retry_count + 1,
                        "last_seen_at": now,
                    },
                ).returning(ProcessedMessage.retry_count)
                result = await session.execute(stmt)
                retry_count = result.scalar_one()
                await session.commit()
                return retry_count

        return await run_with_retry(upsert, name="dedup_register")

    async def purge_older_than(self, days: int) -> int:
        """
        Delete dedup records last seen more than `days` ago.

        Returns:
            Number of rows deleted
        """
        cutoff = self._clock() - timedelta(days=days)
        async with self.session_factory() as session:
            result = await session.execute(
                delete(ProcessedMessage)
                .where(ProcessedMessage.last_seen_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        deleted = result.rowcount or 0
        self.logger.info("dedup_records_purged", deleted_count=deleted, retention_days=days)
        return deleted

    def prune_cache(self) -> int:
        removed = self.cache.prune()
        if removed:
            self.logger.debug("dedup_cache_pruned", removed=removed, size=len(self.cache))
        return removed

    def stats(self) -> dict:
        return {
            "cache_size": len(self.cache),
            "cache_ttl_seconds": self.cache.ttl_seconds,
            "memory_hits": self.memory_hits,
            "store_duplicates": self.store_duplicates,
            "store_errors": self.store_errors,
            "fail_closed": self.fail_closed,
        }


__all__ = [
    "FailurePolicy",
    "DEDUP_FAILURE_POLICIES",
    "RATING_REPLY_PREFIX",
    "classify_message",
    "failure_policy_for",
    "DedupResult",
    "DedupCache",
    "DeduplicationGate",
]
