"""
Unified exception hierarchy for the storm report collector.

Provides typed exceptions with retry classification so the fetch state
machine and the publish path can decide between backoff, skip, and
dead-lettering without string matching.
"""


# Import ErrorCategory from canonical source to avoid duplicate enum issues
# (comparing enums from different classes always returns False)
from core.types import ErrorCategory


class PipelineError(Exception):
    """
    Base exception for all collector errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.category == ErrorCategory.TRANSIENT

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


class TransientError(PipelineError):
    """Base class for transient/retriable errors."""

    category = ErrorCategory.TRANSIENT


class PermanentError(PipelineError):
    """Base class for permanent/non-retriable errors."""

    category = ErrorCategory.PERMANENT


# =============================================================================
# Source Fetch Errors
# =============================================================================


class SourceFetchError(PipelineError):
    """Base class for failures while retrieving a report document."""

    def __init__(
        self,
        message: str,
        url: str | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        context = dict(context or {})
        if url is not None:
            context.setdefault("url", url)
        super().__init__(message, cause, context)
        self.url = url


class TransportError(SourceFetchError):
    """Connection, DNS or timeout failure before any HTTP status was seen.

    Classified transient, but the orchestrator does not retry it within a
    cycle. The next scheduled cycle is the retry.
    """

    category = ErrorCategory.TRANSIENT


class HttpStatusError(SourceFetchError):
    """Remote responded with a non-2xx status."""

    def __init__(
        self,
        status_code: int,
        url: str | None = None,
        message: str | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(
            message or f"HTTP {status_code} fetching {url}",
            url=url,
            cause=cause,
            context={"status_code": status_code},
        )
        self.status_code = status_code
        self.category = classify_http_status(status_code)


class HttpServerError(HttpStatusError):
    """5xx response. Retried with backoff."""

    category = ErrorCategory.TRANSIENT


class HttpClientError(HttpStatusError):
    """4xx response other than 404. Terminal for the cycle."""

    category = ErrorCategory.PERMANENT


class HttpNotFoundError(HttpClientError):
    """404 response. The day's report has not been published yet."""


class EmptyResponseError(SourceFetchError):
    """2xx response with no body at all."""

    category = ErrorCategory.PERMANENT


# =============================================================================
# Delivery Errors
# =============================================================================


class PublishError(TransientError):
    """Error sending a batch to the broker."""

    def __init__(
        self,
        message: str,
        topic: str | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        context = dict(context or {})
        if topic is not None:
            context.setdefault("topic", topic)
        super().__init__(message, cause, context)
        self.topic = topic


class BrokerConnectionError(PublishError):
    """Producer could not be started against the configured brokers."""


class DeadLetterPublishError(PublishError):
    """Dead-letter topic rejected the envelopes. Triggers file fallback."""


class FallbackWriteError(PermanentError):
    """Fallback file could not be written. Data is accepted as lost."""

    def __init__(
        self,
        message: str,
        path: str | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message, cause, {"path": path} if path else None)
        self.path = path


# =============================================================================
# Error Classification Utilities
# =============================================================================


def classify_http_status(status_code: int) -> ErrorCategory:
    """Classify HTTP status code into error category."""
    if 200 <= status_code < 300:
        return ErrorCategory.UNKNOWN  # Not an error

    if 400 <= status_code < 500:
        return ErrorCategory.PERMANENT

    if status_code >= 500:
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


def http_error_for_status(
    status_code: int, url: str | None = None, reason: str | None = None
) -> HttpStatusError:
    """Build the HttpStatusError subclass matching a response status."""
    message = f"HTTP {status_code} fetching {url}"
    if reason:
        message = f"{message} ({reason})"

    if status_code == 404:
        return HttpNotFoundError(status_code, url=url, message=message)
    if 400 <= status_code < 500:
        return HttpClientError(status_code, url=url, message=message)
    if status_code >= 500:
        return HttpServerError(status_code, url=url, message=message)
    return HttpStatusError(status_code, url=url, message=message)


def classify_exception(exc: Exception) -> ErrorCategory:
    """Classify an exception into error category."""
    if isinstance(exc, PipelineError):
        return exc.category

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    connection_markers = (
        "connectionerror",
        "connection refused",
        "connection reset",
        "kafkaconnectionerror",
        "nodenotready",
        "timeout",
    )
    if any(m in exc_type or m in exc_str for m in connection_markers):
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


def is_retryable_error(exc: Exception) -> bool:
    """Check if exception should be retried."""
    if isinstance(exc, PipelineError):
        return exc.is_retryable
    return classify_exception(exc) in (ErrorCategory.TRANSIENT, ErrorCategory.UNKNOWN)
