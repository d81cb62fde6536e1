"""Test resilience -- SEO Autopilot."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from seo_autopilot.errors import (
    OperationTimeout,
    RemoteError,
    ServiceUnavailable,
    TransientRemoteError,
)
from seo_autopilot.resilience import (
    RetryPolicy,
    TaskOutcome,
    execute_parallel,
    with_retry,
    with_timeout,
)


# ===================================================================
# with_timeout
# ===================================================================

class TestWithTimeout:

    @pytest.mark.asyncio
    async def test_returns_result_in_time(self):
        async def quick():
            return "done"

        assert await with_timeout(quick(), 1.0, "quick") == "done"

    @pytest.mark.asyncio
    async def test_raises_operation_timeout(self):
        async def slow():
            await asyncio.sleep(1.0)
            return "late"

        with pytest.raises(OperationTimeout) as exc_info:
            await with_timeout(slow(), 0.05, "slow-call")
        assert exc_info.value.label == "slow-call"
        assert "timed out after 0.05s" in str(exc_info.value)
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_operation_not_cancelled_on_timeout(self):
        finished = asyncio.Event()

        async def slow():
            await asyncio.sleep(0.1)
            finished.set()
            return "late"

        with pytest.raises(OperationTimeout):
            await with_timeout(slow(), 0.02)
        await asyncio.wait_for(finished.wait(), timeout=1.0)
        assert finished.is_set()

    @pytest.mark.asyncio
    async def test_operation_error_propagates(self):
        async def broken():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await with_timeout(broken(), 1.0)


# ===================================================================
# Retry
# ===================================================================

class TestRetry:

    @pytest.mark.asyncio
    async def test_attempts_exactly_max_retries_plus_one(self):
        op = AsyncMock(side_effect=TransientRemoteError("503"))
        with pytest.raises(TransientRemoteError):
            await with_retry(op, max_retries=3, base_delay=0.01)
        assert op.call_count == 4

    @pytest.mark.asyncio
    async def test_stops_at_first_success(self):
        op = AsyncMock(side_effect=[TransientRemoteError("a"), TransientRemoteError("b"), "ok"])
        result = await with_retry(op, max_retries=5, base_delay=0.01)
        assert result == "ok"
        assert op.call_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_error_raised_immediately(self):
        op = AsyncMock(side_effect=RemoteError("400 bad request", status_code=400))
        with pytest.raises(RemoteError):
            await with_retry(op, max_retries=3, base_delay=0.01)
        assert op.call_count == 1

    @pytest.mark.asyncio
    async def test_open_circuit_not_retried(self):
        op = AsyncMock(side_effect=ServiceUnavailable("serper", 30.0))
        with pytest.raises(ServiceUnavailable):
            await with_retry(op, max_retries=3, base_delay=0.01)
        assert op.call_count == 1

    @pytest.mark.asyncio
    async def test_on_retry_callback(self):
        seen = []
        op = AsyncMock(side_effect=[ConnectionError("x"), "ok"])
        await with_retry(
            op, max_retries=2, base_delay=0.01,
            on_retry=lambda attempt, exc, delay: seen.append((attempt, type(exc).__name__)),
        )
        assert seen == [(1, "ConnectionError")]

    def test_exponential_delay_capped_with_jitter(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter_ratio=0.3)
        for attempt in range(8):
            raw = min(1.0 * 2 ** attempt, 10.0)
            delay = policy._calculate_delay(attempt)
            assert raw <= delay <= raw * 1.3 + 0.001

    def test_fixed_schedule_repeats_last_delay(self):
        policy = RetryPolicy(delays=(2, 5, 10))
        assert [policy._calculate_delay(a) for a in range(5)] == [2.0, 5.0, 10.0, 10.0, 10.0]


# ===================================================================
# execute_parallel
# ===================================================================

class TestExecuteParallel:

    @pytest.mark.asyncio
    async def test_failure_isolated_from_siblings(self):
        async def ok():
            return {"value": 1}

        async def fails():
            raise RuntimeError("nope")

        outcomes = await execute_parallel({"a": ok, "b": fails}, timeout=1.0)
        assert outcomes["a"].success is True
        assert outcomes["a"].data == {"value": 1}
        assert outcomes["b"].success is False
        assert isinstance(outcomes["b"].error, RuntimeError)

    @pytest.mark.asyncio
    async def test_slow_task_times_out_individually(self):
        async def fast():
            return "fast"

        async def slow():
            await asyncio.sleep(1.0)

        outcomes = await execute_parallel({"fast": fast, "slow": slow}, timeout=0.05)
        assert outcomes["fast"].success
        assert isinstance(outcomes["slow"].error, OperationTimeout)

    @pytest.mark.asyncio
    async def test_tasks_run_concurrently(self):
        async def nap():
            await asyncio.sleep(0.1)
            return True

        loop = asyncio.get_running_loop()
        start = loop.time()
        outcomes = await execute_parallel({f"t{i}": nap for i in range(5)}, timeout=1.0)
        assert all(o.success for o in outcomes.values())
        assert loop.time() - start < 0.4

    @pytest.mark.asyncio
    async def test_empty_task_map(self):
        assert await execute_parallel({}) == {}

    def test_outcome_to_dict(self):
        assert TaskOutcome(success=True, data=[1]).to_dict() == {"success": True, "data": [1]}
        assert TaskOutcome(success=False, error=ValueError("x")).to_dict() == {
            "success": False, "error": "x",
        }
