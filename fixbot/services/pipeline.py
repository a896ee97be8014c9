"""
Message Pipeline
Single entry point for inbound messages, live and replayed

    rate limiter -> dedup gate -> handler (under a timeout budget) -> dead-letter queue on failure

process() never raises. Whatever happens to a message, the caller (webhook,
queue actor) acknowledges it upstream: retries are owned by the dead-letter
sweeper, not by channel redelivery.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import structlog

from fixbot.errors import ProcessingTimeout, ValidationError, error_code
from fixbot.middleware.correlation_id import bind_correlation_id
from fixbot.models.webhook_schemas import InboundMessage
from fixbot.services.deduplication import classify_message
from fixbot.services.monitoring.error_tracking import capture_exception, set_processing_context
from fixbot.services.timeouts import TimeoutBudget, budget_scope

logger = structlog.get_logger(__name__)

GENERIC_RETRY_MESSAGE = "Sorry, we couldn't process your message. Please try again."


class ProcessingOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    RATE_LIMITED = "rate_limited"
    REJECTED = "rejected"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class ProcessingResult:
    outcome: ProcessingOutcome
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None
    error_code: Optional[str] = None
    dead_letter_id: Optional[int] = None
    retry_count: int = 0


class MessageHandler:
    """
    Business flow contract.

    `handle` is called for live traffic and for dead-letter replay alike.
    Raise ValidationError for payloads that can never be processed; any
    other exception sends the message to the dead-letter queue.
    """

    async def handle(self, message: InboundMessage, subject: str, correlation_id: str) -> None:
        raise NotImplementedError


class MessagePipeline:
    """
    Args:
        handler: Business flow implementation
        dedup_gate: DeduplicationGate
        rate_limiter: DistributedRateLimiter (local-only when built without Redis)
        dead_letters: DeadLetterQueue
        channel: Outbound channel client (for the generic retry message), optional
        processing_timeout: Default budget per message, seconds
    """

    def __init__(
        self,
        handler: MessageHandler,
        dedup_gate,
        rate_limiter,
        dead_letters,
        channel=None,
        processing_timeout: float = 30.0,
    ):
        self.handler = handler
        self.dedup_gate = dedup_gate
        self.rate_limiter = rate_limiter
        self.dead_letters = dead_letters
        self.channel = channel
        self.processing_timeout = processing_timeout
        self.counters: Dict[str, int] = {outcome.value: 0 for outcome in ProcessingOutcome}

    async def process(
        self,
        message: InboundMessage,
        correlation_id: Optional[str] = None,
        timeout: Optional[float] = None,
        stage: str = "live",
    ) -> ProcessingResult:
        """
        Run one inbound message through the gates and the handler.

        Args:
            message: Unit of work
            correlation_id: Existing correlation ID, or None to generate one
            timeout: Budget override (queued messages get a longer one)
            stage: "live" or "queued", for error tracking

        Returns:
            ProcessingResult; never raises
        """
        correlation_id = bind_correlation_id(correlation_id)
        log = logger.bind(message_id=message.message_id, message_type=message.message_type)

        try:
            self._validate(message)
        except ValidationError as e:
            log.warning("message_rejected", reason=e.message, field=e.field)
            return self._result(ProcessingOutcome.REJECTED, message, correlation_id, error_code=e.code)

        subject = message.subject

        try:
            decision = await self.rate_limiter.check_and_record(subject, "message")
        except Exception as e:
            # Limiter trouble must not block traffic
            log.error("rate_limiter_error", error=str(e))
            decision = None
        if decision is not None and not decision.allowed:
            log.warning("message_rate_limited", reason=decision.reason, wait_time_seconds=decision.wait_time_seconds)
            return self._result(ProcessingOutcome.RATE_LIMITED, message, correlation_id)

        dedup = await self.dedup_gate.check(message.message_id, subject, classify_message(message))
        if dedup.is_duplicate:
            return self._result(ProcessingOutcome.DUPLICATE, message, correlation_id, retry_count=dedup.retry_count)

        set_processing_context(message.message_id, message.message_type, stage, correlation_id)

        try:
            await self.dispatch(message, correlation_id, timeout=timeout)
        except ValidationError as e:
            log.warning("message_validation_failed", reason=e.message, field=e.field)
            await self._send_generic_retry_message(subject)
            return self._result(ProcessingOutcome.REJECTED, message, correlation_id, error_code=e.code)
        except Exception as e:
            log.error("message_processing_failed", error=str(e), error_code=error_code(e), exc_info=True)
            capture_exception(e)
            entry_id = await self.dead_letters.save_failed(message, e, correlation_id)
            return self._result(
                ProcessingOutcome.DEAD_LETTERED, message, correlation_id,
                error_code=error_code(e), dead_letter_id=entry_id,
            )

        log.info("message_processed", stage=stage)
        return self._result(ProcessingOutcome.PROCESSED, message, correlation_id)

    async def dispatch(self, message: InboundMessage, correlation_id: str, timeout: Optional[float] = None) -> None:
        """
        Invoke the handler under a fresh timeout budget.

        Shared by live traffic and dead-letter replay. Exceeding the budget
        raises ProcessingTimeout, handled like any other handler failure.
        """
        budget = TimeoutBudget(timeout or self.processing_timeout, operation_id=message.message_id or "unknown")
        with budget_scope(budget):
            try:
                await asyncio.wait_for(
                    self.handler.handle(message, message.subject, correlation_id),
                    timeout=budget.total_seconds,
                )
            except asyncio.TimeoutError:
                raise ProcessingTimeout("handle_message", budget.total_seconds) from None

    @staticmethod
    def _validate(message: InboundMessage) -> None:
        if not message.message_id:
            raise ValidationError("Message has no id", field="message_id")
        if not message.subject:
            raise ValidationError("Message has no sender", field="subject")

    async def _send_generic_retry_message(self, subject: str) -> None:
        if self.channel is None:
            return
        try:
            await self.channel.send_text(subject, GENERIC_RETRY_MESSAGE)
        except Exception as e:
            logger.error("generic_retry_message_failed", error=str(e))

    def _result(self, outcome: ProcessingOutcome, message: InboundMessage, correlation_id: str, **extra) -> ProcessingResult:
        self.counters[outcome.value] += 1
        return ProcessingResult(outcome=outcome, message_id=message.message_id, correlation_id=correlation_id, **extra)

    def stats(self) -> Dict[str, int]:
        return dict(self.counters)


__all__ = [
    "GENERIC_RETRY_MESSAGE",
    "MessageHandler",
    "MessagePipeline",
    "ProcessingOutcome",
    "ProcessingResult",
]
