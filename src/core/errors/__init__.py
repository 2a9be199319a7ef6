"""
Error classification and exception hierarchy.

Provides:
- ErrorCategory enum for classifying errors
- PipelineError hierarchy for typed exceptions
- Source fetch errors (transport, HTTP status, empty response)
- Delivery errors (publish, broker connection, dead-letter, fallback file)
"""

from core.errors.exceptions import (
    BrokerConnectionError,
    DeadLetterPublishError,
    EmptyResponseError,
    # Enums
    ErrorCategory,
    FallbackWriteError,
    HttpClientError,
    HttpNotFoundError,
    HttpServerError,
    HttpStatusError,
    PermanentError,
    # Base classes
    PipelineError,
    PublishError,
    SourceFetchError,
    TransientError,
    TransportError,
    # Classification utilities
    classify_exception,
    classify_http_status,
    http_error_for_status,
    is_retryable_error,
)

__all__ = [
    # Enums
    "ErrorCategory",
    # Base classes
    "PipelineError",
    "TransientError",
    "PermanentError",
    # Fetch errors
    "SourceFetchError",
    "TransportError",
    "HttpStatusError",
    "HttpServerError",
    "HttpClientError",
    "HttpNotFoundError",
    "EmptyResponseError",
    # Delivery errors
    "PublishError",
    "BrokerConnectionError",
    "DeadLetterPublishError",
    "FallbackWriteError",
    # Classification utilities
    "classify_http_status",
    "classify_exception",
    "http_error_for_status",
    "is_retryable_error",
]
