"""
Adaptive admission control for concurrent remote calls.

The limiter reacts asymmetrically: a rate-limit signal halves the allowed
concurrency at once (the remote ceiling has already been exceeded), a streak of
other errors trims it by a fixed step, and it only grows back by the same step
after a sustained run of successes.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)

CONCURRENCY_STEP = 5
ERROR_STREAK_THRESHOLD = 3
DEFAULT_MAX_CONCURRENCY = 50
DEFAULT_MIN_CONCURRENCY = 5
DEFAULT_SUCCESS_THRESHOLD = 20


class AdaptiveRateLimiter:
    """Tracks how many operations may be in flight, from success/error feedback.

    Owned by a single pipeline run and mutated only from that run's event loop.
    """

    def __init__(
        self,
        initial_concurrency: Optional[int] = None,
        min_concurrency: int = DEFAULT_MIN_CONCURRENCY,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        success_threshold: int = DEFAULT_SUCCESS_THRESHOLD,
    ):
        if min_concurrency < 1:
            raise ValueError(f"min_concurrency must be >= 1, got {min_concurrency}")
        if min_concurrency > max_concurrency:
            raise ValueError(
                f"min_concurrency ({min_concurrency}) exceeds max_concurrency ({max_concurrency})"
            )
        if success_threshold < 1:
            raise ValueError(f"success_threshold must be >= 1, got {success_threshold}")

        self.min_concurrency = min_concurrency
        self.max_concurrency = max_concurrency
        self.success_threshold = success_threshold
        initial = max_concurrency if initial_concurrency is None else initial_concurrency
        self.current_concurrency = min(max(initial, min_concurrency), max_concurrency)
        self.consecutive_successes = 0
        self.consecutive_errors = 0

    def get_concurrency(self) -> int:
        return self.current_concurrency

    def record_success(self) -> None:
        """Count a success; grow by one step after a full streak."""
        self.consecutive_successes += 1
        self.consecutive_errors = 0

        if self.consecutive_successes >= self.success_threshold:
            previous = self.current_concurrency
            self.current_concurrency = min(previous + CONCURRENCY_STEP, self.max_concurrency)
            self.consecutive_successes = 0
            if self.current_concurrency != previous:
                logger.info(f"Concurrency increased {previous} -> {self.current_concurrency}")

    def record_error(self, is_rate_limit: bool) -> None:
        """Count an error; halve on rate limits, step down after an error streak."""
        self.consecutive_successes = 0
        self.consecutive_errors += 1
        previous = self.current_concurrency

        if is_rate_limit:
            self.current_concurrency = max(previous // 2, self.min_concurrency)
        elif self.consecutive_errors >= ERROR_STREAK_THRESHOLD:
            self.current_concurrency = max(previous - CONCURRENCY_STEP, self.min_concurrency)
            self.consecutive_errors = 0

        if self.current_concurrency != previous:
            logger.warning(
                f"Concurrency reduced {previous} -> {self.current_concurrency} "
                f"({'rate limit' if is_rate_limit else 'error streak'})"
            )

    def reset(self) -> None:
        self.current_concurrency = self.max_concurrency
        self.consecutive_successes = 0
        self.consecutive_errors = 0

    def __repr__(self) -> str:
        return (
            f"AdaptiveRateLimiter(current={self.current_concurrency}, "
            f"min={self.min_concurrency}, max={self.max_concurrency})"
        )
