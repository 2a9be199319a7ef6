"""Logging utility functions."""

import logging
from typing import Any

# Reserved LogRecord attribute names that cannot be used in extra dict
_RESERVED_LOG_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "asctime",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "exc_info",
        "exc_text",
        "stack_info",
        "taskName",
    }
)


def log_with_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    **kwargs: Any,
) -> None:
    """
    Log with structured context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Additional context fields (url, batch_id, attempt, etc.)
                  Note: exc_info=True is supported and handled specially.

    Example:
        log_with_context(
            logger, logging.INFO, "Report fetched",
            url=url,
            status_code=200,
            duration_ms=elapsed,
        )
    """
    # exc_info is a direct parameter to log(), not extra
    exc_info = kwargs.pop("exc_info", None)

    extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}

    logger.log(level, msg, exc_info=exc_info, extra=extra)


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **kwargs: Any,
) -> None:
    """
    Log exception with context and optional traceback.

    Automatically extracts error_category from PipelineError subclasses
    and truncates long error messages.

    Example:
        try:
            await fetcher.fetch(url)
        except SourceFetchError as e:
            log_exception(logger, e, "Fetch failed", url=url)
    """
    error_category = kwargs.get("error_category")
    if error_category is None and hasattr(exc, "category"):
        cat = exc.category
        kwargs["error_category"] = cat.value if hasattr(cat, "value") else str(cat)

    error_msg = str(exc)
    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."
    kwargs["error_message"] = error_msg
    kwargs.setdefault("error_type", type(exc).__name__)

    extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}

    if include_traceback:
        logger.log(level, msg, exc_info=exc, extra=extra)
    else:
        logger.log(level, msg, extra=extra)


def format_cycle_output(
    cycle_id: str,
    succeeded: int,
    failed: int,
    skipped: int = 0,
    duration_seconds: float | None = None,
) -> str:
    """
    Format the one-line cycle summary.

    Example:
        >>> format_cycle_output("c-20260105-000000-ab12", 2, 1, 0, 4.25)
        'Cycle c-20260105-000000-ab12: total=3 (succeeded=2, failed=1) in 4.2s'
    """
    total = succeeded + failed + skipped
    parts = [f"succeeded={succeeded}", f"failed={failed}"]
    if skipped > 0:
        parts.append(f"skipped={skipped}")

    line = f"Cycle {cycle_id}: total={total} ({', '.join(parts)})"
    if duration_seconds is not None:
        line = f"{line} in {duration_seconds:.1f}s"
    return line
