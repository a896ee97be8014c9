"""
Dead Letter Sweeper
Periodically replays due dead-letter entries through the live dispatch path

One sweep:
1. fetch up to batch_size due entries (oldest first)
2. claim each entry (a lease on next_retry_at) so concurrent sweepers never replay it twice
3. skip entries whose media reference has already expired at the vendor
4. replay the rest through MessagePipeline.dispatch under a per-entry timeout
5. record the outcome on each entry; a store error here only affects that entry
6. log one summary, alert when entries ran out of retries or bookkeeping failed
"""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError as PayloadError

from fixbot.database import utcnow
from fixbot.errors import ValidationError, error_code
from fixbot.middleware.correlation_id import correlation_scope
from fixbot.models.dead_letter_message import DeadLetterStatus
from fixbot.services.dead_letter import DeadLetterEntry, DeadLetterQueue
from fixbot.services.monitoring.error_tracking import set_processing_context

logger = structlog.get_logger(__name__)

# Message types whose payload references vendor media that expires
PERISHABLE_MESSAGE_TYPES = ("image", "audio", "video", "document", "sticker")

MAX_ALERT_ERRORS = 3


@dataclass
class SweepSummary:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    permanently_failed: int = 0
    contended: int = 0
    bookkeeping_failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped_run: bool = False

    @property
    def total(self) -> int:
        return self.processed + self.failed + self.skipped

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["total"] = self.total
        return data


class DeadLetterSweeper:
    """
    Retry scheduler for the dead-letter queue.

    Args:
        queue: DeadLetterQueue
        pipeline: MessagePipeline whose dispatch() is used for replay
        notifier: AlertNotifier
        batch_size: Entries per sweep
        entry_timeout: Seconds allowed per replay
        perishable_types: Message types subject to the freshness check
        freshness_window: Age after which a perishable entry is skipped
        alert_threshold: Permanently failed count that triggers an alert
        critical_threshold: Count at which the alert becomes CRITICAL
        claim_lease_seconds: How long a claimed entry is hidden from other sweepers
        clock: Wall clock (injectable for tests)
    """

    def __init__(
        self,
        queue: DeadLetterQueue,
        pipeline,
        notifier,
        batch_size: int = 10,
        entry_timeout: float = 30.0,
        perishable_types=PERISHABLE_MESSAGE_TYPES,
        freshness_window: timedelta = timedelta(hours=24),
        alert_threshold: int = 1,
        critical_threshold: int = 5,
        claim_lease_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.pipeline = pipeline
        self.notifier = notifier
        self.batch_size = batch_size
        self.entry_timeout = entry_timeout
        self.perishable_types = tuple(perishable_types)
        self.freshness_window = freshness_window
        self.alert_threshold = alert_threshold
        self.critical_threshold = critical_threshold
        self.claim_lease_seconds = max(claim_lease_seconds, entry_timeout)
        self._clock = clock
        self._lock = asyncio.Lock()
        self.logger = logger.bind(service="dlq_sweeper")

        self.runs = 0
        self.last_summary: Optional[SweepSummary] = None

    async def sweep(self) -> SweepSummary:
        """
        Run one sweep.

        Overlapping calls in the same process return immediately with
        `skipped_run=True`.

        Raises:
            Exception: If fetching due entries or sending the summary alert fails;
                a CRITICAL alert is raised first. Errors while recording one
                entry's outcome are logged, counted in `bookkeeping_failed` and
                the sweep moves on.
        """
        if self._lock.locked():
            self.logger.info("dlq_sweep_already_running")
            return SweepSummary(skipped_run=True)

        async with self._lock:
            try:
                summary = await self._sweep()
            except Exception as e:
                self.logger.error("dlq_processor_failed", error=str(e), exc_info=True)
                await self.notifier.notify(
                    "CRITICAL",
                    "dlq_processor_failure",
                    "Dead letter sweep crashed",
                    {"error": str(e), "error_code": error_code(e)},
                )
                raise

        self.runs += 1
        self.last_summary = summary
        return summary

    async def _sweep(self) -> SweepSummary:
        summary = SweepSummary()
        entries = await self.queue.fetch_due(limit=self.batch_size)

        if not entries:
            self.logger.debug("dlq_sweep_empty")
            return summary

        self.logger.info("dlq_sweep_started", entries=len(entries))

        for entry in entries:
            try:
                await self._process_entry(entry, summary)
            except Exception as e:
                summary.bookkeeping_failed += 1
                summary.errors.append({
                    "entry_id": entry.id,
                    "message_id": entry.message_id,
                    "stage": "bookkeeping",
                    "error": str(e)[:200],
                    "error_code": error_code(e),
                })
                self.logger.error("dlq_entry_bookkeeping_failed", entry_id=entry.id, error=str(e), exc_info=True)

        self.logger.info(
            "dlq_sweep_completed",
            processed=summary.processed,
            failed=summary.failed,
            skipped=summary.skipped,
            permanently_failed=summary.permanently_failed,
            contended=summary.contended,
            bookkeeping_failed=summary.bookkeeping_failed,
        )

        if summary.permanently_failed >= self.alert_threshold:
            severity = "CRITICAL" if summary.permanently_failed >= self.critical_threshold else "WARNING"
            await self.notifier.notify(
                severity,
                "dlq_permanent_failure",
                f"{summary.permanently_failed} dead-letter message(s) exhausted their retries",
                {
                    "permanently_failed": summary.permanently_failed,
                    "processed": summary.processed,
                    "failed": summary.failed,
                    "skipped": summary.skipped,
                    "errors": summary.errors[:MAX_ALERT_ERRORS],
                },
            )

        if summary.bookkeeping_failed:
            await self.notifier.notify(
                "ERROR",
                "dlq_bookkeeping_failure",
                f"Could not record the outcome of {summary.bookkeeping_failed} dead-letter replay(s)",
                {
                    "bookkeeping_failed": summary.bookkeeping_failed,
                    "errors": [e for e in summary.errors if e.get("stage") == "bookkeeping"][:MAX_ALERT_ERRORS],
                },
            )

        return summary

    def expired_reason(self, entry: DeadLetterEntry) -> Optional[str]:
        """Skip reason if the entry's payload is past its freshness window."""
        if entry.message_type not in self.perishable_types:
            return None
        age = self._clock() - entry.created_at
        if age <= self.freshness_window:
            return None
        hours = int(age.total_seconds() // 3600)
        window_hours = int(self.freshness_window.total_seconds() // 3600)
        return f"Media expired ({hours}h > {window_hours}h)"

    async def _process_entry(self, entry: DeadLetterEntry, summary: SweepSummary) -> None:
        log = self.logger.bind(entry_id=entry.id, message_id=entry.message_id, retry_count=entry.retry_count)

        if not await self.queue.claim(entry, self.claim_lease_seconds):
            summary.contended += 1
            return

        reason = self.expired_reason(entry)
        if reason:
            await self.queue.mark_skipped(entry.id, reason)
            summary.skipped += 1
            log.info("dlq_entry_skipped", reason=reason)
            return

        try:
            message = entry.to_message()
        except PayloadError as e:
            await self.queue.mark_skipped(entry.id, f"Unreadable payload: {e.error_count()} error(s)")
            summary.skipped += 1
            log.error("dlq_entry_payload_invalid", error=str(e))
            return

        with correlation_scope(entry.correlation_id) as correlation_id:
            set_processing_context(entry.message_id, entry.message_type, "replay", correlation_id)
            try:
                await self.pipeline.dispatch(message, correlation_id, timeout=self.entry_timeout)
            except ValidationError as e:
                await self.queue.mark_skipped(entry.id, f"Validation failed: {e.message}")
                summary.skipped += 1
                log.warning("dlq_entry_rejected", reason=e.message)
                return
            except Exception as e:
                await self._record_failure(entry, e, summary, log)
                return

        await self.queue.mark_processed(entry.id)
        summary.processed += 1
        log.info("dlq_entry_replayed")

    async def _record_failure(self, entry: DeadLetterEntry, error: Exception, summary: SweepSummary, log) -> None:
        summary.failed += 1
        updated = await self.queue.record_retry_failure(entry.id, error)
        log.warning("dlq_entry_retry_failed", error=str(error), error_code=error_code(error))

        if updated is not None and updated.status == DeadLetterStatus.FAILED.value:
            summary.permanently_failed += 1
            summary.errors.append({
                "entry_id": entry.id,
                "message_id": entry.message_id,
                "message_type": entry.message_type,
                "error": str(error)[:200],
                "error_code": error_code(error),
            })

    def stats(self) -> Dict[str, Any]:
        return {
            "runs": self.runs,
            "running": self._lock.locked(),
            "batch_size": self.batch_size,
            "entry_timeout_seconds": self.entry_timeout,
            "last_summary": self.last_summary.to_dict() if self.last_summary else None,
        }


__all__ = ["DeadLetterSweeper", "SweepSummary", "PERISHABLE_MESSAGE_TYPES"]
