"""Timeout, retry and bounded-concurrency primitives for coroutine code."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Sequence, TypeVar, cast

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_MAX_BACKOFF_SECONDS = 5.0


async def with_timeout(awaitable: Awaitable[T], seconds: float) -> T:
    """Await *awaitable* for at most *seconds*.

    The awaited work is cancelled when the deadline passes; cleanup belongs in
    its own ``finally`` blocks.

    Raises:
        TimeoutError: The deadline passed first.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise TimeoutError(f"Operation timed out after {seconds:g}s") from exc


def exponential_backoff(attempt: int) -> float:
    """Delay before retry number *attempt* (0-based): 1s, 2s, 4s, capped at 5s."""
    return min(2.0**attempt, _MAX_BACKOFF_SECONDS)


def retry_unless_timeout(error: BaseException) -> bool:
    """Default retry policy: everything except timeouts and cancellation."""
    return not isinstance(error, (TimeoutError, asyncio.CancelledError))


async def with_retry(
    operation: Callable[[int], Awaitable[T]],
    *,
    max_retries: int = 2,
    retry_delay: Callable[[int], float] = exponential_backoff,
    should_retry: Callable[[BaseException], bool] = retry_unless_timeout,
) -> T:
    """Call ``operation(attempt)`` up to ``max_retries + 1`` times.

    Args:
        operation:    Coroutine factory receiving the 0-based attempt number.
        max_retries:  Extra attempts after the first one.
        retry_delay:  Seconds to sleep before the retry following *attempt*.
        should_retry: Predicate deciding whether an error is worth another go.

    Returns:
        The first successful result.

    Raises:
        The last error once retries are exhausted or *should_retry* declines.
    """

    def _wait(retry_state: RetryCallState) -> float:
        return retry_delay(retry_state.attempt_number - 1)

    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            "retry.scheduled",
            attempt=retry_state.attempt_number,
            max_attempts=max_retries + 1,
            error=str(error),
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=_wait,
        retry=retry_if_exception(lambda exc: isinstance(exc, Exception) and should_retry(exc)),
        before_sleep=_log_retry,
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            result = await operation(attempt.retry_state.attempt_number - 1)
    return result


async def with_concurrency_limit(
    items: Sequence[T],
    operation: Callable[[T, int], Awaitable[R]],
    concurrency: int = 2,
) -> list[R]:
    """Apply *operation* to every item with at most *concurrency* in flight.

    ``result[i]`` always corresponds to ``items[i]`` regardless of completion
    order. The first unhandled exception cancels the sibling workers and is
    re-raised to the caller.

    Args:
        items:       Inputs, processed in index order.
        operation:   Coroutine function called as ``operation(item, index)``.
        concurrency: Maximum simultaneous operations (>= 1).

    Returns:
        Results in input order.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")
    if not items:
        return []

    results: list[R | None] = [None] * len(items)
    next_index = 0

    async def _worker() -> None:
        nonlocal next_index
        while next_index < len(items):
            index = next_index
            next_index += 1
            results[index] = await operation(items[index], index)

    workers = [asyncio.create_task(_worker()) for _ in range(min(concurrency, len(items)))]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        raise

    return cast("list[R]", results)
