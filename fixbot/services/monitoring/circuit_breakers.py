"""
Circuit Breaker Implementation for External Service Dependencies

Protects against cascading failures by opening circuits after consecutive failures
and probing recovery after a cooldown period.

State machine:
    CLOSED    -> OPEN       after failure_threshold consecutive failures
    OPEN      -> HALF_OPEN  once cooldown elapsed (checked lazily in can_execute)
    HALF_OPEN -> CLOSED     after success_threshold consecutive successes
    HALF_OPEN -> OPEN       on any failure

Services protected:
- WhatsApp Cloud API (outbound messages)
- Alert webhook
- Database (for callers that opt in)

Breakers are process-local and live in a CircuitBreakerRegistry built once at
startup and passed to the services that need it.
"""

import inspect
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, Union

import structlog

from fixbot.errors import CircuitOpenError, ValidationError

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class BreakerConfig:
    """Thresholds for one breaker."""
    failure_threshold: int = 5
    success_threshold: int = 2
    cooldown_seconds: float = 30.0
    excluded_exceptions: Tuple[Type[BaseException], ...] = ()


@dataclass(frozen=True)
class ExecutionPermit:
    """Result of can_execute()."""
    allowed: bool
    reason: Optional[str] = None


# Per-dependency overrides. Anything not listed uses the registry default.
SERVICE_BREAKER_CONFIGS: Dict[str, BreakerConfig] = {
    "whatsapp": BreakerConfig(
        failure_threshold=3,
        success_threshold=1,
        cooldown_seconds=60.0,
        excluded_exceptions=(ValidationError,),
    ),
    "alert_webhook": BreakerConfig(failure_threshold=3, success_threshold=1, cooldown_seconds=60.0),
    "database": BreakerConfig(failure_threshold=3, success_threshold=1, cooldown_seconds=35.0),
}

StateChangeListener = Callable[["CircuitBreaker", CircuitState, CircuitState], None]
Fallback = Union[Callable[[], Any], Callable[[], Awaitable[Any]]]


async def _call(fn: Callable[[], Any]) -> Any:
    result = fn()
    if inspect.isawaitable(result):
        result = await result
    return result


class CircuitBreaker:
    """
    Circuit breaker for a single named dependency.

    Args:
        name: Dependency name (registry key)
        config: Thresholds and cooldown
        clock: Monotonic clock in seconds (injectable for tests)
        listeners: Callables notified on every state transition
    """

    def __init__(
        self,
        name: str,
        config: Optional[BreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        listeners: Optional[List[StateChangeListener]] = None,
    ):
        self.name = name
        self.config = config or BreakerConfig()
        self._clock = clock
        self._listeners = list(listeners or [])

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None
        self._last_state_change = clock()
        self._last_error: Optional[str] = None

        self._total_calls = 0
        self._successful_calls = 0
        self._failed_calls = 0
        self._rejected_calls = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    def retry_after(self) -> float:
        """Seconds until an OPEN circuit may be probed again (0 when not open)."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.config.cooldown_seconds - self._clock())

    def can_execute(self) -> ExecutionPermit:
        """
        Decide whether a call may go through.

        OPEN circuits move to HALF_OPEN here, on the first check after the
        cooldown has elapsed. There is no background timer.
        """
        if self._state == CircuitState.CLOSED:
            return ExecutionPermit(allowed=True)

        if self._state == CircuitState.OPEN:
            remaining = self.retry_after()
            if remaining > 0:
                return ExecutionPermit(
                    allowed=False,
                    reason=f"Circuit open for {self.name}. Retry in {int(remaining) + 1}s",
                )
            self._transition(CircuitState.HALF_OPEN)

        return ExecutionPermit(allowed=True)

    async def execute(self, fn: Callable[[], Any], fallback: Optional[Fallback] = None) -> Any:
        """
        Run `fn` under breaker protection.

        Args:
            fn: Zero-argument callable, sync or returning an awaitable
            fallback: Optional zero-argument callable used when the circuit
                rejects the call or `fn` fails

        Returns:
            Result of `fn`, or of `fallback`

        Raises:
            CircuitOpenError: Circuit rejected the call and no fallback given
            Exception: Whatever `fn` raised, when no fallback given
        """
        permit = self.can_execute()
        if not permit.allowed:
            self._rejected_calls += 1
            if fallback is not None:
                logger.info("circuit_breaker_fallback", breaker=self.name, reason=permit.reason)
                return await _call(fallback)
            raise CircuitOpenError(self.name, retry_after=self.retry_after())

        self._total_calls += 1
        try:
            result = await _call(fn)
        except Exception as e:
            self.record_failure(e)
            if fallback is not None:
                logger.info("circuit_breaker_fallback", breaker=self.name, reason="call_failed", error=str(e))
                return await _call(fallback)
            raise

        self.record_success()
        return result

    def record_success(self) -> None:
        self._successful_calls += 1

        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                self._transition(CircuitState.CLOSED)
        else:
            self._failure_count = 0

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        if error is not None and isinstance(error, self.config.excluded_exceptions):
            # Not a dependency health signal (e.g. a rejected payload)
            self._successful_calls += 1
            return

        self._failed_calls += 1
        self._last_error = str(error) if error is not None else None

        if self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return

        self._failure_count += 1
        self._success_count = 0
        if self._state == CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
            self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        """Force the breaker back to a fresh CLOSED state. Ops/test hook."""
        old_state = self._state
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None
        self._last_state_change = self._clock()
        self._last_error = None
        self._total_calls = 0
        self._successful_calls = 0
        self._failed_calls = 0
        self._rejected_calls = 0
        logger.info("circuit_breaker_reset", breaker=self.name, previous_state=old_state.value)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return

        self._state = new_state
        self._last_state_change = self._clock()
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = self._last_state_change if new_state == CircuitState.OPEN else None

        logger.warning(
            "circuit_breaker_state_change",
            breaker=self.name,
            old_state=old_state.value,
            new_state=new_state.value,
            last_error=self._last_error,
        )

        for listener in self._listeners:
            try:
                listener(self, old_state, new_state)
            except Exception as e:
                logger.error("circuit_breaker_listener_failed", breaker=self.name, error=str(e), exc_info=True)

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "failure_threshold": self.config.failure_threshold,
            "success_threshold": self.config.success_threshold,
            "cooldown_seconds": self.config.cooldown_seconds,
            "retry_after_seconds": round(self.retry_after(), 1),
            "seconds_since_state_change": round(self._clock() - self._last_state_change, 1),
            "total_calls": self._total_calls,
            "successful_calls": self._successful_calls,
            "failed_calls": self._failed_calls,
            "rejected_calls": self._rejected_calls,
            "last_error": self._last_error,
        }


class CircuitBreakerRegistry:
    """
    Named breakers, created lazily on first use.

    The only intentional shared mutable state of the core. Build one per
    process and pass it around; tests build their own.
    """

    def __init__(
        self,
        configs: Optional[Dict[str, BreakerConfig]] = None,
        default_config: Optional[BreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        listeners: Optional[List[StateChangeListener]] = None,
    ):
        self._configs = dict(SERVICE_BREAKER_CONFIGS if configs is None else configs)
        self._default_config = default_config or BreakerConfig()
        self._clock = clock
        self._listeners: List[StateChangeListener] = list(listeners or [])
        self._breakers: Dict[str, CircuitBreaker] = {}

    def add_listener(self, listener: StateChangeListener) -> None:
        """Attach a listener to current and future breakers."""
        self._listeners.append(listener)
        for breaker in self._breakers.values():
            breaker._listeners.append(listener)

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                config=self._configs.get(name, self._default_config),
                clock=self._clock,
                listeners=self._listeners,
            )
            self._breakers[name] = breaker
            logger.info("circuit_breaker_initialized", breaker=name)
        return breaker

    def names(self) -> List[str]:
        return sorted(self._breakers)

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.stats() for name, breaker in sorted(self._breakers.items())}

    def reset(self, name: str) -> bool:
        """
        Reset one breaker.

        Returns:
            False if no breaker with that name has been created yet
        """
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()


class BreakerAlertListener:
    """
    Raises an alert when a circuit opens.

    Alert delivery runs as a detached task so the state transition (which
    happens inside a caller's request) never waits on the notifier.
    """

    def __init__(self, notifier, tasks):
        self.notifier = notifier
        self.tasks = tasks

    def __call__(self, breaker: CircuitBreaker, old_state: CircuitState, new_state: CircuitState) -> None:
        if new_state != CircuitState.OPEN:
            return
        if breaker.name == "alert_webhook":
            # Avoid alerting through the channel that just failed
            return

        self.tasks.spawn(
            self.notifier.notify(
                "WARNING",
                "circuit_breaker_open",
                f"Circuit breaker opened for {breaker.name}",
                {
                    "breaker": breaker.name,
                    "previous_state": old_state.value,
                    "cooldown_seconds": breaker.config.cooldown_seconds,
                    "last_error": breaker.stats()["last_error"],
                },
                dedup_key=f"circuit_breaker_open:{breaker.name}",
            ),
            name=f"breaker_alert:{breaker.name}",
        )


__all__ = [
    "CircuitState",
    "BreakerConfig",
    "ExecutionPermit",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "BreakerAlertListener",
    "SERVICE_BREAKER_CONFIGS",
]
