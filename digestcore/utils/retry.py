"""Exponential-backoff retry for network and LLM calls, built on tenacity."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, TypeVar

import aiohttp
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

if TYPE_CHECKING:
    from digestcore.observability.metrics import MetricsSink

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0
DEFAULT_MULTIPLIER = 2.0

_RETRYABLE_STATUS_NAMES = ("RateLimitError", "APITimeoutError", "APIConnectionError", "InternalServerError")


def _status_of(exc: BaseException) -> Optional[int]:
    for attr in ("status", "status_code", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None) or getattr(response, "status", None)
    return value if isinstance(value, int) else None


def is_retryable_error(exc: BaseException) -> bool:
    """Connection resets/timeouts, HTTP 5xx and rate limits are worth another try."""
    if isinstance(exc, (ConnectionResetError, ConnectionAbortedError, asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(exc, (aiohttp.ClientConnectionError, aiohttp.ServerTimeoutError)):
        return True
    status = _status_of(exc)
    if status is not None and (status >= 500 or status == 429):
        return True
    # SDK errors (openai / anthropic) without importing either package here
    return type(exc).__name__ in _RETRYABLE_STATUS_NAMES


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    multiplier: float = DEFAULT_MULTIPLIER,
    retryable: Callable[[BaseException], bool] = is_retryable_error,
    on_retry: Optional[Callable[[BaseException, int], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds, fails non-retryably, or attempts run out.

    Delay before attempt n+1 is ``initial_delay * multiplier ** (n - 1)``, capped
    at ``max_delay``. The last error is re-raised unchanged.
    """

    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        logger.warning(
            "Retrying operation (attempt %d/%d, delay %.1fs): %s",
            state.attempt_number, max_attempts, delay, exc,
        )
        if on_retry is not None and exc is not None:
            on_retry(exc, state.attempt_number)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=initial_delay, exp_base=multiplier, max=max_delay),
        retry=retry_if_exception(retryable),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await operation()
    raise AssertionError("unreachable")  # pragma: no cover


async def with_retry_and_metrics(
    operation: Callable[[], Awaitable[T]],
    *,
    metrics: "MetricsSink",
    metric_type: str,
    metric_operation: str,
    **retry_options: Any,
) -> T:
    """``with_retry`` plus one success/failure metric carrying latency and attempts."""
    started = time.monotonic()
    attempts = 0
    user_on_retry = retry_options.pop("on_retry", None)

    def _on_retry(exc: BaseException, attempt: int) -> None:
        nonlocal attempts
        attempts = attempt
        if user_on_retry is not None:
            user_on_retry(exc, attempt)

    try:
        result = await with_retry(operation, on_retry=_on_retry, **retry_options)
    except Exception as e:
        await metrics.record(
            metric_type,
            metric_operation,
            "failure",
            {
                "latency": int((time.monotonic() - started) * 1000),
                "attempts": attempts + 1,
                "error": str(e),
            },
        )
        raise

    await metrics.record(
        metric_type,
        metric_operation,
        "success",
        {"latency": int((time.monotonic() - started) * 1000), "attempts": attempts + 1},
    )
    return result
