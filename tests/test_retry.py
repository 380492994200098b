"""Tests for exponential-backoff retry and its metrics wrapper."""

from __future__ import annotations

import aiohttp
import pytest

from digestcore.observability.metrics import LLM_CALL, InMemoryMetrics
from digestcore.utils.retry import is_retryable_error, with_retry, with_retry_and_metrics


class FlakyOperation:
    """Raises the queued errors in order, then returns ``value``."""

    def __init__(self, errors=(), value="done"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class RateLimitError(Exception):
    pass


class TestRetryable:
    def test_network_errors(self):
        assert is_retryable_error(ConnectionResetError())
        assert is_retryable_error(TimeoutError())
        assert is_retryable_error(aiohttp.ClientConnectionError())

    def test_http_status(self):
        assert is_retryable_error(_with_status(503))
        assert is_retryable_error(_with_status(429))
        assert not is_retryable_error(_with_status(404))

    def test_sdk_error_names(self):
        assert is_retryable_error(RateLimitError())

    def test_plain_errors_not_retried(self):
        assert not is_retryable_error(ValueError("bad input"))


def _with_status(status: int) -> Exception:
    exc = Exception(f"HTTP {status}")
    exc.status_code = status
    return exc


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_first_try(self):
        op, sleep = FlakyOperation(), SleepRecorder()
        assert await with_retry(op, sleep=sleep) == "done"
        assert op.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retries_then_succeeds_with_backoff(self):
        op = FlakyOperation([ConnectionResetError(), TimeoutError()])
        sleep = SleepRecorder()

        assert await with_retry(op, sleep=sleep) == "done"
        assert op.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_delay_capped(self):
        op = FlakyOperation([TimeoutError()] * 3)
        sleep = SleepRecorder()

        await with_retry(op, max_attempts=4, initial_delay=5, multiplier=3, max_delay=8, sleep=sleep)

        assert sleep.delays == [5, 8, 8]

    @pytest.mark.asyncio
    async def test_gives_up_with_last_error(self):
        op = FlakyOperation([TimeoutError("one"), TimeoutError("two"), TimeoutError("three")])

        with pytest.raises(TimeoutError, match="three"):
            await with_retry(op, sleep=SleepRecorder())
        assert op.calls == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self):
        op = FlakyOperation([ValueError("nope")])
        sleep = SleepRecorder()

        with pytest.raises(ValueError):
            await with_retry(op, sleep=sleep)
        assert op.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_custom_predicate_and_callback(self):
        seen = []
        op = FlakyOperation([ValueError("retry me")])

        result = await with_retry(
            op,
            retryable=lambda e: isinstance(e, ValueError),
            on_retry=lambda e, attempt: seen.append((str(e), attempt)),
            sleep=SleepRecorder(),
        )

        assert result == "done"
        assert seen == [("retry me", 1)]


class TestWithRetryAndMetrics:
    @pytest.mark.asyncio
    async def test_success_metric(self):
        metrics = InMemoryMetrics()
        op = FlakyOperation([ConnectionResetError()])

        await with_retry_and_metrics(
            op, metrics=metrics, metric_type=LLM_CALL, metric_operation="digest", sleep=SleepRecorder()
        )

        [event] = metrics.events
        assert (event.type, event.operation, event.status) == (LLM_CALL, "digest", "success")
        assert event.metadata["attempts"] == 2
        assert event.metadata["latency"] >= 0

    @pytest.mark.asyncio
    async def test_failure_metric(self):
        metrics = InMemoryMetrics()
        op = FlakyOperation([TimeoutError("slow")] * 3)

        with pytest.raises(TimeoutError):
            await with_retry_and_metrics(
                op, metrics=metrics, metric_type=LLM_CALL, metric_operation="digest", sleep=SleepRecorder()
            )

        [event] = metrics.events
        assert event.status == "failure"
        assert event.metadata["attempts"] == 3
        assert event.metadata["error"] == "slow"

    @pytest.mark.asyncio
    async def test_non_retryable_failure_counts_one_attempt(self):
        metrics = InMemoryMetrics()

        with pytest.raises(ValueError):
            await with_retry_and_metrics(
                FlakyOperation([ValueError("bad")]),
                metrics=metrics,
                metric_type=LLM_CALL,
                metric_operation="digest",
            )

        assert metrics.events[0].metadata["attempts"] == 1
