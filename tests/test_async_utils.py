"""Tests for the timeout, retry and concurrency primitives."""

from __future__ import annotations

import asyncio

import pytest

from iceberg_search.exceptions import RateLimitError
from iceberg_search.services.providers.base import is_retryable
from iceberg_search.utils.async_utils import (
    exponential_backoff,
    retry_unless_timeout,
    with_concurrency_limit,
    with_retry,
    with_timeout,
)


def _no_delay(_attempt: int) -> float:
    return 0.0


# ---------------------------------------------------------------------------
# with_timeout
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestWithTimeout:
    """Tests for the timeout wrapper."""

    async def test_returns_value_in_time(self) -> None:
        """A fast operation's result passes through."""

        async def fast() -> int:
            return 42

        assert await with_timeout(fast(), 1.0) == 42

    async def test_raises_builtin_timeout(self) -> None:
        """A slow operation surfaces as the builtin TimeoutError."""
        with pytest.raises(TimeoutError, match="timed out after 0.01s"):
            await with_timeout(asyncio.sleep(1.0), 0.01)

    async def test_cancels_underlying_work(self) -> None:
        """The awaited coroutine is cancelled at the deadline."""
        cancelled = asyncio.Event()

        async def slow() -> None:
            try:
                await asyncio.sleep(1.0)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(TimeoutError):
            await with_timeout(slow(), 0.01)
        assert cancelled.is_set()

    async def test_operation_errors_propagate(self) -> None:
        """Errors raised before the deadline are not converted."""

        async def broken() -> None:
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await with_timeout(broken(), 1.0)


# ---------------------------------------------------------------------------
# with_retry
# ---------------------------------------------------------------------------


class TestBackoff:
    """Tests for the default delay and retry policies."""

    def test_doubles_then_caps(self) -> None:
        """1s, 2s, 4s, then capped at 5s."""
        assert [exponential_backoff(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_default_policy_skips_timeouts(self) -> None:
        """Timeouts and cancellation are never retried by default."""
        assert retry_unless_timeout(ValueError()) is True
        assert retry_unless_timeout(TimeoutError()) is False
        assert retry_unless_timeout(asyncio.CancelledError()) is False

    def test_provider_policy_skips_rate_limits(self) -> None:
        """Retrying a rate limit only burns quota."""
        assert is_retryable(RateLimitError()) is False
        assert is_retryable(ConnectionError()) is True


@pytest.mark.asyncio
class TestWithRetry:
    """Tests for retry-with-backoff."""

    async def test_succeeds_after_transient_failures(self) -> None:
        """Retries until the operation succeeds and passes the attempt number."""
        attempts: list[int] = []

        async def flaky(attempt: int) -> str:
            attempts.append(attempt)
            if attempt < 2:
                raise ConnectionError("transient")
            return "ok"

        result = await with_retry(flaky, max_retries=2, retry_delay=_no_delay)
        assert result == "ok"
        assert attempts == [0, 1, 2]

    async def test_surfaces_last_error_when_exhausted(self) -> None:
        """After max_retries + 1 attempts the last error is raised."""
        calls = 0

        async def always_fails(attempt: int) -> None:
            nonlocal calls
            calls += 1
            raise ConnectionError(f"attempt {attempt}")

        with pytest.raises(ConnectionError, match="attempt 2"):
            await with_retry(always_fails, max_retries=2, retry_delay=_no_delay)
        assert calls == 3

    async def test_should_retry_false_stops_immediately(self) -> None:
        """A declined error is raised after a single attempt."""
        calls = 0

        async def rate_limited(_attempt: int) -> None:
            nonlocal calls
            calls += 1
            raise RateLimitError()

        with pytest.raises(RateLimitError):
            await with_retry(rate_limited, max_retries=3, retry_delay=_no_delay, should_retry=is_retryable)
        assert calls == 1

    async def test_timeouts_not_retried_by_default(self) -> None:
        """TimeoutError is raised straight through."""
        calls = 0

        async def times_out(_attempt: int) -> None:
            nonlocal calls
            calls += 1
            raise TimeoutError("slow")

        with pytest.raises(TimeoutError):
            await with_retry(times_out, max_retries=3, retry_delay=_no_delay)
        assert calls == 1

    async def test_retry_delay_receives_attempt_index(self) -> None:
        """The delay callable sees the 0-based index of the failed attempt."""
        seen: list[int] = []

        def delay(attempt: int) -> float:
            seen.append(attempt)
            return 0.0

        async def always_fails(_attempt: int) -> None:
            raise ConnectionError()

        with pytest.raises(ConnectionError):
            await with_retry(always_fails, max_retries=2, retry_delay=delay)
        assert seen[:2] == [0, 1]


# ---------------------------------------------------------------------------
# with_concurrency_limit
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestWithConcurrencyLimit:
    """Tests for bounded fan-out."""

    async def test_results_follow_input_order(self) -> None:
        """Index i's result lands at position i whatever the completion order."""
        delays = [0.03, 0.0, 0.02, 0.01]

        async def op(delay: float, index: int) -> int:
            await asyncio.sleep(delay)
            return index * 10

        assert await with_concurrency_limit(delays, op, concurrency=2) == [0, 10, 20, 30]

    async def test_never_exceeds_limit(self) -> None:
        """At most `concurrency` operations are in flight at once."""
        in_flight = 0
        peak = 0

        async def op(_item: int, _index: int) -> None:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        await with_concurrency_limit(list(range(7)), op, concurrency=3)
        assert peak == 3

    async def test_empty_input(self) -> None:
        """No items means no work and an empty result."""

        async def op(_item: int, _index: int) -> int:
            raise AssertionError("should not be called")

        assert await with_concurrency_limit([], op) == []

    async def test_invalid_concurrency(self) -> None:
        """Concurrency below one is rejected."""

        async def op(item: int, _index: int) -> int:
            return item

        with pytest.raises(ValueError):
            await with_concurrency_limit([1], op, concurrency=0)

    async def test_first_error_cancels_siblings(self) -> None:
        """An unhandled error propagates and in-flight siblings are cancelled."""
        cancelled: list[int] = []

        async def op(item: int, index: int) -> int:
            if item == 0:
                await asyncio.sleep(0.01)
                raise RuntimeError("worker failed")
            try:
                await asyncio.sleep(1.0)
            except asyncio.CancelledError:
                cancelled.append(index)
                raise
            return item

        with pytest.raises(RuntimeError, match="worker failed"):
            await with_concurrency_limit([0, 1], op, concurrency=2)
        assert cancelled == [1]
