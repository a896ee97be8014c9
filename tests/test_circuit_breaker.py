"""
Tests for CircuitBreaker and CircuitBreakerRegistry

Tests cover:
- CLOSED -> OPEN after the failure threshold
- Lazy OPEN -> HALF_OPEN on the first check after the cooldown
- HALF_OPEN -> CLOSED after the success threshold, -> OPEN on any failure
- Fallbacks, excluded exceptions, registry and alert listener
"""

from unittest.mock import AsyncMock

import pytest

from fixbot.errors import CircuitOpenError, ValidationError
from fixbot.services.background import DetachedTasks
from fixbot.services.monitoring.circuit_breakers import (
    BreakerAlertListener,
    BreakerConfig,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    SERVICE_BREAKER_CONFIGS,
)


async def failing():
    raise ConnectionError("upstream down")


async def succeeding():
    return "ok"


@pytest.fixture
def breaker(mono_clock):
    return CircuitBreaker(
        "crm",
        BreakerConfig(failure_threshold=3, success_threshold=2, cooldown_seconds=30),
        clock=mono_clock,
    )


async def trip(breaker, times):
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.execute(failing)


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_opens_after_failure_threshold(self, breaker):
        await trip(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

        await trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker):
        await trip(breaker, 2)
        assert await breaker.execute(succeeding) == "ok"
        await trip(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_calling(self, breaker, mono_clock):
        await trip(breaker, 3)
        mono_clock.advance(10)
        fn = AsyncMock()

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(fn)

        fn.assert_not_called()
        assert exc_info.value.service_name == "crm"
        assert exc_info.value.retry_after == pytest.approx(20)
        permit = breaker.can_execute()
        assert permit.allowed is False
        assert permit.reason == "Circuit open for crm. Retry in 21s"

    @pytest.mark.asyncio
    async def test_half_open_after_cooldown_is_lazy(self, breaker, mono_clock):
        await trip(breaker, 3)
        mono_clock.advance(31)

        # No timer: still OPEN until someone asks
        assert breaker.state == CircuitState.OPEN
        assert breaker.can_execute().allowed is True
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_half_open_closes_after_success_threshold(self, breaker, mono_clock):
        await trip(breaker, 3)
        mono_clock.advance(31)

        await breaker.execute(succeeding)
        assert breaker.state == CircuitState.HALF_OPEN
        await breaker.execute(succeeding)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, breaker, mono_clock):
        await trip(breaker, 3)
        mono_clock.advance(31)
        await breaker.execute(succeeding)

        await trip(breaker, 1)

        assert breaker.state == CircuitState.OPEN
        assert breaker.retry_after() == pytest.approx(30)

    @pytest.mark.asyncio
    async def test_fallback_on_rejection_and_on_failure(self, breaker):
        assert await breaker.execute(failing, fallback=lambda: "cached") == "cached"
        await trip(breaker, 2)
        assert breaker.state == CircuitState.OPEN

        fallback = AsyncMock(return_value="degraded")
        assert await breaker.execute(succeeding, fallback=fallback) == "degraded"
        assert breaker.stats()["rejected_calls"] == 1

    @pytest.mark.asyncio
    async def test_sync_callables_are_supported(self, breaker):
        assert await breaker.execute(lambda: 42) == 42

    @pytest.mark.asyncio
    async def test_excluded_exceptions_do_not_count(self, mono_clock):
        breaker = CircuitBreaker("whatsapp", SERVICE_BREAKER_CONFIGS["whatsapp"], clock=mono_clock)

        async def rejected():
            raise ValidationError("bad recipient")

        for _ in range(5):
            with pytest.raises(ValidationError):
                await breaker.execute(rejected)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_reset_closes_circuit(self, breaker):
        await trip(breaker, 3)
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats()["failed_calls"] == 0

    @pytest.mark.asyncio
    async def test_listener_sees_every_transition(self, mono_clock):
        transitions = []
        breaker = CircuitBreaker(
            "crm",
            BreakerConfig(failure_threshold=1, success_threshold=1, cooldown_seconds=5),
            clock=mono_clock,
            listeners=[lambda b, old, new: transitions.append((old, new))],
        )

        await trip(breaker, 1)
        mono_clock.advance(6)
        await breaker.execute(succeeding)

        assert transitions == [
            (CircuitState.CLOSED, CircuitState.OPEN),
            (CircuitState.OPEN, CircuitState.HALF_OPEN),
            (CircuitState.HALF_OPEN, CircuitState.CLOSED),
        ]

    @pytest.mark.asyncio
    async def test_listener_errors_are_contained(self, breaker):
        def broken_listener(b, old, new):
            raise RuntimeError("listener bug")

        breaker._listeners.append(broken_listener)
        await trip(breaker, 3)
        assert breaker.state == CircuitState.OPEN


class TestCircuitBreakerRegistry:

    def test_creates_breakers_lazily_with_service_config(self, mono_clock):
        registry = CircuitBreakerRegistry(clock=mono_clock)
        assert registry.names() == []

        whatsapp = registry.get("whatsapp")
        other = registry.get("crm")

        assert registry.get("whatsapp") is whatsapp
        assert whatsapp.config.failure_threshold == 3
        assert other.config == BreakerConfig()
        assert registry.names() == ["crm", "whatsapp"]

    @pytest.mark.asyncio
    async def test_reset_by_name(self, mono_clock):
        registry = CircuitBreakerRegistry(default_config=BreakerConfig(failure_threshold=1), clock=mono_clock)
        await trip(registry.get("crm"), 1)

        assert registry.reset("crm") is True
        assert registry.get("crm").state == CircuitState.CLOSED
        assert registry.reset("unknown") is False

    @pytest.mark.asyncio
    async def test_reset_all(self, mono_clock):
        registry = CircuitBreakerRegistry(default_config=BreakerConfig(failure_threshold=1), clock=mono_clock)
        await trip(registry.get("a"), 1)
        await trip(registry.get("b"), 1)

        registry.reset_all()

        assert {s["state"] for s in registry.stats().values()} == {"CLOSED"}


class TestBreakerAlertListener:

    @pytest.mark.asyncio
    async def test_alerts_when_a_circuit_opens(self, mono_clock):
        notifier = AsyncMock()
        tasks = DetachedTasks()
        registry = CircuitBreakerRegistry(default_config=BreakerConfig(failure_threshold=1), clock=mono_clock)
        registry.add_listener(BreakerAlertListener(notifier, tasks))

        await trip(registry.get("crm"), 1)
        await tasks.drain(timeout=1)

        notifier.notify.assert_awaited_once()
        severity, alert_type, _message, details = notifier.notify.await_args.args
        assert severity == "WARNING"
        assert alert_type == "circuit_breaker_open"
        assert details["breaker"] == "crm"

    @pytest.mark.asyncio
    async def test_alert_channel_breaker_does_not_alert(self, mono_clock):
        notifier = AsyncMock()
        tasks = DetachedTasks()
        registry = CircuitBreakerRegistry(clock=mono_clock)
        registry.add_listener(BreakerAlertListener(notifier, tasks))

        await trip(registry.get("alert_webhook"), 3)
        await tasks.drain(timeout=1)

        notifier.notify.assert_not_called()
