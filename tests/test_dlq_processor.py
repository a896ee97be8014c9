"""
Tests for DeadLetterSweeper

Tests cover:
- A failing message walks PENDING -> RETRYING -> FAILED with backoff, then alerts
- A message whose dependency recovers is replayed and marked PROCESSED
- Perishable entries past the freshness window are skipped
- Replay validation failures are skipped, unreadable payloads are skipped
- Sweep crashes raise a critical alert
- A store error while recording one outcome leaves the rest of the batch intact
- Concurrent sweepers replay a due entry once
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from conftest import make_message
from fixbot.errors import TransientDependencyError, ValidationError
from fixbot.middleware.correlation_id import get_correlation_id
from fixbot.models.dead_letter_message import DeadLetterStatus
from fixbot.services.dead_letter import DeadLetterQueue
from fixbot.services.deduplication import DeduplicationGate
from fixbot.services.dlq_processor import DeadLetterSweeper
from fixbot.services.pipeline import MessageHandler, MessagePipeline, ProcessingOutcome
from fixbot.services.rate_limiter import DistributedRateLimiter, SlidingWindowRateLimiter


class FlakyHandler(MessageHandler):
    """Fails until `recover_after` calls have been made."""

    def __init__(self, recover_after=None, error=None):
        self.calls = 0
        self.correlation_ids = []
        self.recover_after = recover_after
        self.error = error or TransientDependencyError("crm", "CRM unavailable")

    async def handle(self, message, subject, correlation_id):
        self.calls += 1
        self.correlation_ids.append((correlation_id, get_correlation_id()))
        if self.recover_after is None or self.calls <= self.recover_after:
            raise self.error


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def setup(session_factory, wall_clock, notifier):
    def build(handler):
        queue = DeadLetterQueue(session_factory, max_retries=3, first_retry_delay_seconds=60, backoff_base=5, clock=wall_clock)
        pipeline = MessagePipeline(
            handler,
            DeduplicationGate(session_factory),
            DistributedRateLimiter(None, SlidingWindowRateLimiter()),
            queue,
        )
        sweeper = DeadLetterSweeper(queue, pipeline, notifier, batch_size=10, entry_timeout=5.0, clock=wall_clock)
        return queue, pipeline, sweeper
    return build


class TestDeadLetterSweeper:

    @pytest.mark.asyncio
    async def test_failing_message_ends_failed_after_third_retry(self, setup, wall_clock, notifier):
        handler = FlakyHandler()
        queue, pipeline, sweeper = setup(handler)

        result = await pipeline.process(make_message("m2"))
        assert result.outcome == ProcessingOutcome.DEAD_LETTERED
        entry_id = result.dead_letter_id

        # Not due yet
        assert (await sweeper.sweep()).total == 0

        wall_clock.advance(seconds=61)
        summary = await sweeper.sweep()
        entry = await queue.get(entry_id)
        assert summary.failed == 1
        assert entry.status == DeadLetterStatus.RETRYING.value
        assert entry.retry_count == 1
        assert entry.next_retry_at == wall_clock.now + timedelta(minutes=5)

        wall_clock.advance(minutes=5)
        await sweeper.sweep()
        entry = await queue.get(entry_id)
        assert entry.retry_count == 2
        assert entry.next_retry_at == wall_clock.now + timedelta(minutes=25)

        wall_clock.advance(minutes=25)
        summary = await sweeper.sweep()
        entry = await queue.get(entry_id)
        assert entry.status == DeadLetterStatus.FAILED.value
        assert entry.retry_count == 3
        assert entry.next_retry_at is None
        assert summary.permanently_failed == 1

        # Live attempt + 3 retries
        assert handler.calls == 4

        severity, alert_type, _message, details = notifier.notify.await_args.args
        assert severity == "WARNING"
        assert alert_type == "dlq_permanent_failure"
        assert details["permanently_failed"] == 1
        assert details["errors"][0]["message_id"] == "m2"

        # Nothing left to retry
        wall_clock.advance(days=1)
        assert (await sweeper.sweep()).total == 0
        assert handler.calls == 4

    @pytest.mark.asyncio
    async def test_recovered_dependency_marks_entry_processed(self, setup, wall_clock, notifier):
        handler = FlakyHandler(recover_after=1)
        queue, pipeline, sweeper = setup(handler)
        result = await pipeline.process(make_message("m1"), correlation_id="corr-live")

        wall_clock.advance(seconds=61)
        summary = await sweeper.sweep()

        entry = await queue.get(result.dead_letter_id)
        assert summary.processed == 1
        assert entry.status == DeadLetterStatus.PROCESSED.value
        # Replay runs under the original correlation id
        assert handler.correlation_ids[-1] == ("corr-live", "corr-live")
        notifier.notify.assert_not_called()

    @pytest.mark.asyncio
    async def test_expired_media_is_skipped(self, setup, wall_clock):
        handler = FlakyHandler()
        queue, pipeline, sweeper = setup(handler)
        result = await pipeline.process(make_message("img-1", message_type="image"))

        wall_clock.advance(hours=30)
        summary = await sweeper.sweep()

        entry = await queue.get(result.dead_letter_id)
        assert summary.skipped == 1
        assert entry.status == DeadLetterStatus.SKIPPED.value
        assert entry.status_reason == "Media expired (30h > 24h)"
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_fresh_media_is_replayed(self, setup, wall_clock):
        handler = FlakyHandler(recover_after=1)
        queue, pipeline, sweeper = setup(handler)
        result = await pipeline.process(make_message("img-1", message_type="image"))

        wall_clock.advance(hours=2)
        await sweeper.sweep()

        assert (await queue.get(result.dead_letter_id)).status == DeadLetterStatus.PROCESSED.value

    @pytest.mark.asyncio
    async def test_replay_validation_failure_is_skipped(self, setup, wall_clock):
        handler = FlakyHandler()
        queue, pipeline, sweeper = setup(handler)
        result = await pipeline.process(make_message("m1"))
        handler.error = ValidationError("Ticket flow no longer exists")

        wall_clock.advance(seconds=61)
        summary = await sweeper.sweep()

        entry = await queue.get(result.dead_letter_id)
        assert summary.skipped == 1
        assert entry.status == DeadLetterStatus.SKIPPED.value
        assert "Ticket flow no longer exists" in entry.status_reason

    @pytest.mark.asyncio
    async def test_unreadable_payload_is_skipped(self, setup, session_factory, wall_clock):
        handler = FlakyHandler()
        queue, pipeline, sweeper = setup(handler)
        result = await pipeline.process(make_message("m1"))

        from sqlalchemy import update
        from fixbot.models.dead_letter_message import DeadLetterMessage
        async with session_factory() as session:
            await session.execute(
                update(DeadLetterMessage).where(DeadLetterMessage.id == result.dead_letter_id).values(payload="{not json")
            )
            await session.commit()

        wall_clock.advance(seconds=61)
        summary = await sweeper.sweep()

        assert summary.skipped == 1
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_sweep_crash_raises_critical_alert(self, setup, notifier):
        _queue, _pipeline, sweeper = setup(FlakyHandler())
        sweeper.queue = AsyncMock()
        sweeper.queue.fetch_due.side_effect = RuntimeError("store down")

        with pytest.raises(RuntimeError):
            await sweeper.sweep()

        severity, alert_type, _message, _details = notifier.notify.await_args.args
        assert severity == "CRITICAL"
        assert alert_type == "dlq_processor_failure"

    @pytest.mark.asyncio
    async def test_many_permanent_failures_escalate_to_critical(self, session_factory, wall_clock, notifier):
        queue = DeadLetterQueue(session_factory, max_retries=1, clock=wall_clock)
        pipeline = MessagePipeline(
            FlakyHandler(),
            DeduplicationGate(session_factory),
            DistributedRateLimiter(None, SlidingWindowRateLimiter()),
            queue,
        )
        sweeper = DeadLetterSweeper(queue, pipeline, notifier, critical_threshold=5, clock=wall_clock)
        for n in range(5):
            await pipeline.process(make_message(f"m{n}", subject=f"49151000000{n}"))

        wall_clock.advance(minutes=2)
        summary = await sweeper.sweep()

        assert summary.permanently_failed == 5
        severity, _alert_type, _message, details = notifier.notify.await_args.args
        assert severity == "CRITICAL"
        assert len(details["errors"]) == 3

    @pytest.mark.asyncio
    async def test_store_error_on_one_entry_does_not_abort_the_batch(self, setup, wall_clock, notifier):
        handler = FlakyHandler(recover_after=3)
        queue, pipeline, sweeper = setup(handler)
        results = [await pipeline.process(make_message(f"m{n}", subject=f"49151000000{n}")) for n in range(3)]
        entry_ids = [r.dead_letter_id for r in results]

        mark_processed = queue.mark_processed
        attempts = []

        async def mark_processed_once_broken(entry_id):
            attempts.append(entry_id)
            if len(attempts) == 1:
                raise OperationalError("UPDATE dead_letter_messages", {}, Exception("database is locked"))
            return await mark_processed(entry_id)

        queue.mark_processed = mark_processed_once_broken

        wall_clock.advance(seconds=61)
        summary = await sweeper.sweep()

        assert handler.calls == 6
        assert summary.processed == 2
        assert summary.bookkeeping_failed == 1
        assert summary.errors[0]["entry_id"] == entry_ids[0]
        statuses = [(await queue.get(entry_id)).status for entry_id in entry_ids]
        assert statuses == [DeadLetterStatus.PENDING.value, DeadLetterStatus.PROCESSED.value, DeadLetterStatus.PROCESSED.value]

        alert_types = [call.args[1] for call in notifier.notify.await_args_list]
        assert alert_types == ["dlq_bookkeeping_failure"]

        # The claimed entry stays hidden until its lease runs out
        assert (await sweeper.sweep()).total == 0
        assert handler.calls == 6

    @pytest.mark.asyncio
    async def test_concurrent_sweepers_replay_an_entry_once(self, setup, wall_clock, notifier):
        handler = FlakyHandler(recover_after=1)
        queue, pipeline, sweeper = setup(handler)
        other_sweeper = DeadLetterSweeper(queue, pipeline, notifier, entry_timeout=5.0, clock=wall_clock)
        result = await pipeline.process(make_message("m1"))

        wall_clock.advance(seconds=61)
        summaries = await asyncio.gather(sweeper.sweep(), other_sweeper.sweep())

        assert handler.calls == 2
        assert sum(s.processed for s in summaries) == 1
        assert (await queue.get(result.dead_letter_id)).status == DeadLetterStatus.PROCESSED.value
