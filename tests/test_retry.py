"""
Retry Executor Tests

Backoff schedule, retry bounds and error classification.
Run with: pytest tests/test_retry.py -v
"""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import aiohttp
import pytest

from mailflow.gmail.client import GmailApiError
from mailflow.utils.retry import (
    RetryConfig,
    calculate_backoff,
    create_retryable,
    is_rate_limit_error,
    is_retryable_error,
    with_retry,
)


class StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


def no_wait(**kwargs):
    """Retry policy that never sleeps for real."""
    return RetryConfig(initial_backoff=0, max_backoff=0, jitter=0, **kwargs)


class TestCalculateBackoff:
    """Tests for the exponential backoff schedule."""

    def test_exponential_growth_without_jitter(self):
        config = RetryConfig(initial_backoff=1.0, backoff_multiplier=2.0, max_backoff=30.0, jitter=0)

        delays = [calculate_backoff(n, config) for n in range(1, 5)]

        assert delays == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_backoff(self):
        config = RetryConfig(initial_backoff=1.0, backoff_multiplier=2.0, max_backoff=5.0, jitter=0)

        assert calculate_backoff(10, config) == 5.0

    def test_monotonic_non_decreasing(self):
        config = RetryConfig(initial_backoff=0.5, backoff_multiplier=3.0, max_backoff=20.0, jitter=0)

        delays = [calculate_backoff(n, config) for n in range(1, 12)]

        assert delays == sorted(delays)
        assert max(delays) == 20.0

    def test_jitter_is_bounded(self):
        config = RetryConfig(initial_backoff=1.0, max_backoff=30.0, jitter=0.5)

        for _ in range(50):
            delay = calculate_backoff(1, config)
            assert 1.0 <= delay <= 1.5


class TestErrorClassification:
    """Tests for is_rate_limit_error / is_retryable_error."""

    @pytest.mark.parametrize("status", [429, 403, 503])
    def test_rate_limit_statuses(self, status):
        assert is_rate_limit_error(GmailApiError(status, "nope"))

    @pytest.mark.parametrize("message", [
        "Quota exceeded for quota metric",
        "Rate limit reached for gpt-4o-mini",
        "Too Many Requests",
        "RESOURCE EXHAUSTED",
    ])
    def test_rate_limit_messages(self, message):
        assert is_rate_limit_error(Exception(message))

    def test_plain_error_is_not_rate_limit(self):
        assert not is_rate_limit_error(ValueError("bad payload"))

    def test_status_code_attribute_is_read(self):
        assert is_rate_limit_error(StatusError("slow down", 429))
        assert is_retryable_error(StatusError("upstream", 502))

    @pytest.mark.parametrize("status", [500, 502, 503, 504, 429])
    def test_server_errors_are_retryable(self, status):
        assert is_retryable_error(GmailApiError(status, "server"))

    @pytest.mark.parametrize("status", [400, 401, 404])
    def test_client_errors_are_not_retryable(self, status):
        assert not is_retryable_error(GmailApiError(status, "client"))

    def test_timeouts_and_network_errors_are_retryable(self):
        assert is_retryable_error(TimeoutError())
        assert is_retryable_error(asyncio.TimeoutError())
        assert is_retryable_error(ConnectionResetError())
        assert is_retryable_error(aiohttp.ServerDisconnectedError())
        assert is_retryable_error(Exception("ECONNRESET while reading"))

    def test_validation_error_is_not_retryable(self):
        assert not is_retryable_error(ValueError("Invalid classification response"))


class TestWithRetry:
    """Tests for the retry loop."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        operation = AsyncMock(return_value="ok")

        result = await with_retry(operation, no_wait())

        assert result.value == "ok"
        assert result.attempts == 1
        assert result.total_delay == 0
        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_recovers_after_transient_errors(self):
        operation = AsyncMock(side_effect=[GmailApiError(500, "boom"), GmailApiError(503, "busy"), "ok"])

        result = await with_retry(operation, no_wait(max_retries=3))

        assert result.value == "ok"
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_attempts_bounded_by_max_retries_plus_one(self):
        error = GmailApiError(500, "always")
        operation = AsyncMock(side_effect=error)

        with pytest.raises(GmailApiError) as exc_info:
            await with_retry(operation, no_wait(max_retries=2))

        assert exc_info.value is error
        assert operation.call_count == 3

    @pytest.mark.asyncio
    async def test_zero_retries_means_one_attempt(self):
        operation = AsyncMock(side_effect=TimeoutError("slow"))

        with pytest.raises(TimeoutError):
            await with_retry(operation, no_wait(max_retries=0))

        assert operation.call_count == 1

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_immediately(self):
        error = GmailApiError(404, "not found")
        operation = AsyncMock(side_effect=error)
        on_retry = Mock()

        with pytest.raises(GmailApiError) as exc_info:
            await with_retry(operation, no_wait(max_retries=5, on_retry=on_retry))

        assert exc_info.value is error
        assert operation.call_count == 1
        on_retry.assert_not_called()

    @pytest.mark.asyncio
    async def test_on_retry_called_before_each_sleep(self):
        errors = [GmailApiError(429, "slow down"), GmailApiError(429, "slow down")]
        operation = AsyncMock(side_effect=errors + ["ok"])
        on_retry = Mock()
        config = RetryConfig(max_retries=3, initial_backoff=1.0, jitter=0, on_retry=on_retry)

        with patch("mailflow.utils.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            result = await with_retry(operation, config)

        assert result.attempts == 3
        assert result.total_delay == 3.0
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]
        assert on_retry.call_count == 2
        attempt, delay, error = on_retry.call_args_list[0].args
        assert (attempt, delay, error) == (1, 1.0, errors[0])

    @pytest.mark.asyncio
    async def test_custom_retryable_predicate(self):
        operation = AsyncMock(side_effect=[KeyError("flaky"), "ok"])
        config = no_wait(is_retryable=lambda e: isinstance(e, KeyError))

        result = await with_retry(operation, config)

        assert result.value == "ok"
        assert result.attempts == 2

    def test_negative_max_retries_rejected(self):
        with pytest.raises(ValueError):
            RetryConfig(max_retries=-1)


class TestCreateRetryable:

    @pytest.mark.asyncio
    async def test_wrapper_passes_arguments_through(self):
        fetch = AsyncMock(side_effect=[ConnectionError("reset"), {"id": "m1"}])
        retryable_fetch = create_retryable(fetch, no_wait())

        result = await retryable_fetch("m1", format="full")

        assert result.value == {"id": "m1"}
        assert result.attempts == 2
        fetch.assert_called_with("m1", format="full")
