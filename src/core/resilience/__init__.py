"""
Resilience patterns module.

Components:
    - RetryConfig: Exponential backoff configuration
    - Standard configs: DEFAULT_PUBLISH_RETRY, DEFAULT_FETCH_RETRY
"""

from .retry import (
    DEFAULT_FETCH_RETRY,
    DEFAULT_PUBLISH_RETRY,
    RetryConfig,
)

__all__ = [
    "RetryConfig",
    "DEFAULT_PUBLISH_RETRY",
    "DEFAULT_FETCH_RETRY",
]
