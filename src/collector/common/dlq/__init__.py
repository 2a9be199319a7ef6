"""
Dead-letter handling.

Routes batches that exhausted publish retries to the dead-letter topic,
falling back to local JSON files when that topic is unavailable.
"""

from collector.common.dlq.manager import (
    DeadLetterDestination,
    DeadLetterManager,
    DeadLetterResult,
)
from collector.common.dlq.models import (
    DeadLetterEnvelope,
    DeadLetterMetadata,
    FileFallbackMetadata,
    FileFallbackRecord,
)

__all__ = [
    "DeadLetterManager",
    "DeadLetterDestination",
    "DeadLetterResult",
    "DeadLetterEnvelope",
    "DeadLetterMetadata",
    "FileFallbackRecord",
    "FileFallbackMetadata",
]
