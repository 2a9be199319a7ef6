"""
Core types shared across modules.

This module provides the base enums used by the error hierarchy and the
retry policies so every layer classifies failures the same way.
"""

from enum import Enum


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    The collector uses this to decide whether a failure is worth another
    attempt (fetch backoff, publish retry) or is terminal for the current
    cycle.

    Categories:
        TRANSIENT: Temporary failures that may succeed later
                   (e.g., 5xx responses, broker unavailable)
        PERMANENT: Failures that will not succeed on retry
                   (e.g., 404, other 4xx, empty documents)
        UNKNOWN: Unclassified errors
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


__all__ = [
    "ErrorCategory",
]
