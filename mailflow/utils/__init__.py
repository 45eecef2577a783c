"""Shared async building blocks: retry, admission control, worker pool."""

from .rate_limiter import AdaptiveRateLimiter
from .retry import (
    RetryConfig,
    RetryResult,
    calculate_backoff,
    create_retryable,
    is_rate_limit_error,
    is_retryable_error,
    with_retry,
)
from .worker_pool import run_adaptive_pool

__all__ = [
    "AdaptiveRateLimiter",
    "RetryConfig",
    "RetryResult",
    "calculate_backoff",
    "create_retryable",
    "is_rate_limit_error",
    "is_retryable_error",
    "with_retry",
    "run_adaptive_pool",
]
