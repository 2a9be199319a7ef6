"""
Retry configuration with exception-aware handling.

Uses the exception hierarchy to make retry decisions:
- Transient errors: retry with exponential backoff
- Permanent errors: fail immediately (no retry)

Delays are deterministic unless jitter is enabled. The collector's fetch
backoff is measured in minutes and operators expect the configured
schedule to be followed exactly.
"""

import logging
import random
from dataclasses import dataclass

from core.errors.exceptions import is_retryable_error

logger = logging.getLogger(__name__)


def _as_bool(value) -> bool:
    # bool('false') would be True
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    ``max_retries`` counts retries after the first attempt, so an operation
    runs at most ``max_retries + 1`` times.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0

    # Equal jitter (half fixed, half random) when True
    jitter: bool = False

    def __post_init__(self):
        """Ensure proper types from YAML/env vars."""
        self.max_retries = int(self.max_retries)
        self.base_delay = float(self.base_delay)
        self.max_delay = float(self.max_delay)
        self.exponential_base = float(self.exponential_base)
        self.jitter = _as_bool(self.jitter)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def get_delay(self, attempt: int) -> float:
        """
        Calculate the delay before the next attempt.

        Args:
            attempt: 0-indexed number of the attempt that just failed

        Returns:
            Delay in seconds, capped at max_delay
        """
        delay = self.base_delay * (self.exponential_base**attempt)

        if self.jitter:
            delay = (delay / 2) + random.uniform(0, delay / 2)

        return min(delay, self.max_delay)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """
        Determine if error should be retried.

        Args:
            error: The exception that occurred
            attempt: 0-indexed current attempt

        Returns:
            True if should retry
        """
        if attempt >= self.max_retries:
            return False
        return is_retryable_error(error)

    def delay_schedule(self) -> list[float]:
        """Delays that a fully exhausted retry sequence would wait."""
        return [self.get_delay(attempt) for attempt in range(self.max_retries)]


# Default configurations
DEFAULT_PUBLISH_RETRY = RetryConfig(max_retries=3, base_delay=1.0, max_delay=30.0)
DEFAULT_FETCH_RETRY = RetryConfig(
    max_retries=3, base_delay=1800.0, max_delay=21600.0, exponential_base=2.0
)


__all__ = [
    "RetryConfig",
    "DEFAULT_PUBLISH_RETRY",
    "DEFAULT_FETCH_RETRY",
]
