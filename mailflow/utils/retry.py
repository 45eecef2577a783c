"""
Retry with exponential backoff for async remote calls.

Every remote call in the pipelines (Gmail list/get, classification requests)
goes through with_retry(). The retry loop itself never touches the adaptive
rate limiter; callers pass an on_retry observer that feeds it.

Backoff: initial * multiplier^(attempt-1), capped at max_backoff, plus
uniform jitter so concurrent workers that hit a rate limit together do not
retry in lockstep.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import aiohttp

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 30.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_JITTER = 0.5

# 403 is how Gmail reports per-user rate limits (userRateLimitExceeded)
RATE_LIMIT_STATUS_CODES = {429, 403, 503}
RATE_LIMIT_MESSAGES = (
    "quota",
    "rate limit",
    "too many requests",
    "resource exhausted",
)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
NETWORK_ERROR_MESSAGES = (
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "connection error",
    "socket hang up",
)
NETWORK_ERROR_TYPES = (
    TimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
    aiohttp.ClientConnectionError,
)


def _status_code(error: BaseException) -> Optional[int]:
    """Pull an HTTP status off an exception (aiohttp uses .status, openai .status_code)."""
    for attr in ("status", "status_code", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def is_rate_limit_error(error: BaseException) -> bool:
    """Check if an error signals that we are over the remote rate limit."""
    message = str(error).lower()
    if any(m in message for m in RATE_LIMIT_MESSAGES):
        return True
    return _status_code(error) in RATE_LIMIT_STATUS_CODES


def is_retryable_error(error: BaseException) -> bool:
    """
    Default retryable check.

    Retries on:
    - Rate limits (status 429/403/503 or quota-style messages)
    - Network errors and timeouts
    - 5xx server errors (500, 502, 503, 504)

    Does NOT retry on anything else, e.g. 4xx client errors or
    validation failures of a response body.
    """
    if is_rate_limit_error(error):
        return True

    if isinstance(error, NETWORK_ERROR_TYPES):
        return True

    message = str(error).lower()
    if any(m in message for m in NETWORK_ERROR_MESSAGES):
        return True

    return _status_code(error) in RETRYABLE_STATUS_CODES


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy for a single with_retry() call."""

    max_retries: int = DEFAULT_MAX_RETRIES
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF
    max_backoff: float = DEFAULT_MAX_BACKOFF
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: float = DEFAULT_JITTER
    is_retryable: Callable[[BaseException], bool] = is_retryable_error
    is_rate_limit: Callable[[BaseException], bool] = is_rate_limit_error
    # Called synchronously before each backoff sleep: (attempt, delay, error)
    on_retry: Optional[Callable[[int, float, BaseException], Any]] = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")


@dataclass
class RetryResult(Generic[T]):
    """Value returned by the operation plus how hard it was to get."""

    value: T
    attempts: int
    total_delay: float


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """
    Calculate the delay before retrying after the given (1-based) attempt.

    Args:
        attempt: Number of the attempt that just failed, starting at 1
        config: Retry policy

    Returns:
        Delay in seconds, including jitter
    """
    exponential = config.initial_backoff * config.backoff_multiplier ** (attempt - 1)
    capped = min(exponential, config.max_backoff)
    return capped + random.uniform(0, config.jitter)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
) -> RetryResult[T]:
    """
    Run an async operation, retrying transient failures with backoff.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        config: Retry policy (defaults to RetryConfig())

    Returns:
        RetryResult with the operation's value, attempts used and total delay

    Raises:
        The last error unchanged, once it is not retryable or retries run out
    """
    config = config or RetryConfig()
    attempts = 0
    total_delay = 0.0

    while True:
        attempts += 1
        try:
            value = await operation()
            return RetryResult(value=value, attempts=attempts, total_delay=total_delay)
        except Exception as e:
            if attempts > config.max_retries or not config.is_retryable(e):
                raise

            delay = calculate_backoff(attempts, config)
            kind = "Rate limited" if config.is_rate_limit(e) else "Transient error"
            logger.warning(
                f"{kind}: {str(e) or type(e).__name__}, retrying in {delay:.1f}s "
                f"(attempt {attempts}/{config.max_retries + 1})"
            )
            if config.on_retry:
                config.on_retry(attempts, delay, e)

            total_delay += delay
            await asyncio.sleep(delay)


def create_retryable(
    fn: Callable[..., Awaitable[T]],
    config: Optional[RetryConfig] = None,
) -> Callable[..., Awaitable[RetryResult[T]]]:
    """
    Wrap an async function so every call goes through with_retry().

    Usage:
        fetch = create_retryable(client.get_message, RetryConfig(max_retries=5))
        result = await fetch("msg_123")
    """

    async def wrapper(*args, **kwargs) -> RetryResult[T]:
        return await with_retry(lambda: fn(*args, **kwargs), config)

    return wrapper
