"""
Core library: reusable, infrastructure-agnostic components.

Modules:
    resilience  - Retry configuration with exponential backoff
    logging     - Structured JSON logging with cycle/report context
    errors      - Error classification and exception hierarchy
    utils       - JSON serialization helpers

Design Principles:
    - No dependencies on Kafka or HTTP client specifics
    - All modules are independently testable
"""

from .types import ErrorCategory

__version__ = "0.1.0"

__all__ = [
    "ErrorCategory",
]
