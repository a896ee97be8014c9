"""
Tests for TimeoutBudget and with_timeout
"""

import asyncio

import pytest

from fixbot.errors import ProcessingTimeout
from fixbot.services.timeouts import TimeoutBudget, budget_scope, current_budget, with_timeout


class TestTimeoutBudget:

    def test_remaining_counts_down(self, mono_clock):
        budget = TimeoutBudget(30, clock=mono_clock)
        mono_clock.advance(12)

        assert budget.elapsed() == 12
        assert budget.remaining() == 18
        assert budget.is_expired() is False

    def test_expires(self, mono_clock):
        budget = TimeoutBudget(30, clock=mono_clock)
        mono_clock.advance(31)

        assert budget.remaining() == 0
        assert budget.is_expired() is True

    def test_effective_timeout_is_capped_by_remaining(self, mono_clock):
        budget = TimeoutBudget(30, clock=mono_clock)
        mono_clock.advance(25)

        assert budget.effective_timeout(10) == 5
        assert budget.effective_timeout(2) == 2
        assert budget.effective_timeout() == 5

    def test_effective_timeout_is_zero_below_threshold(self, mono_clock):
        budget = TimeoutBudget(30, clock=mono_clock)
        mono_clock.advance(29.5)

        assert budget.effective_timeout(10) == 0
        assert budget.effective_timeout(10, min_threshold=0.1) == 0.5

    def test_budget_scope_restores_previous(self):
        outer = TimeoutBudget(30)
        inner = TimeoutBudget(5)
        assert current_budget() is None

        with budget_scope(outer):
            with budget_scope(inner):
                assert current_budget() is inner
            assert current_budget() is outer

        assert current_budget() is None


class TestWithTimeout:

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def work():
            return "done"

        assert await with_timeout(work(), requested=1.0, operation="work") == "done"

    @pytest.mark.asyncio
    async def test_raises_processing_timeout(self):
        with pytest.raises(ProcessingTimeout) as exc_info:
            await with_timeout(asyncio.sleep(1), requested=0.01, operation="slow_call")

        assert exc_info.value.operation == "slow_call"
        assert exc_info.value.code == "ETIMEDOUT"

    @pytest.mark.asyncio
    async def test_exhausted_budget_fails_fast(self, mono_clock):
        budget = TimeoutBudget(30, operation_id="m1", clock=mono_clock)
        mono_clock.advance(29.9)
        started = []

        async def work():
            started.append(True)

        with budget_scope(budget):
            with pytest.raises(ProcessingTimeout):
                await with_timeout(work(), requested=10, operation="crm_call")

        assert started == []
