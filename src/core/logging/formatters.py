"""Log formatters for JSON and console output."""

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any

from core.logging.context import get_log_context
from core.utils.json_serializers import json_serializer


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with context injection.

    Produces one JSON object per line for easy parsing with jq/grep.
    Sanitizes URLs to remove credentials before logging.
    """

    # Fields to extract from LogRecord extras
    EXTRA_FIELDS = [
        # Correlation
        "batch_id",
        "duration_ms",
        # HTTP
        "url",
        "status_code",
        "content_length",
        # Errors
        "error_category",
        "error_message",
        "error_kind",
        "error_type",
        "error",
        # Processing counts
        "records_total",
        "records_published",
        "records_dead_lettered",
        "records_fallback",
        "records_lost",
        "batch_size",
        "batch_count",
        "batch_sequence",
        "failed_batches",
        "successful",
        "failed",
        "skipped",
        "total",
        # Resilience
        "attempt",
        "max_attempts",
        "delay_seconds",
        "outcome",
        "reason",
        # Broker
        "topic",
        "dlq_topic",
        "message_count",
        "ref_count",
        "bootstrap_servers",
        # Fallback files
        "file_path",
        "file_size_bytes",
        "max_size_bytes",
        "sample_envelope",
        # Operation tracking
        "operation",
        "extra_fields",
        "cron",
        "next_run",
    ]

    # Numeric fields are kept typed so log queries can aggregate them
    NUMERIC_FIELDS = {
        "duration_ms": float,
        "delay_seconds": float,
        "attempt": int,
        "max_attempts": int,
        "status_code": int,
        "content_length": int,
        "batch_size": int,
        "batch_count": int,
        "batch_sequence": int,
        "failed_batches": int,
        "records_total": int,
        "records_published": int,
        "records_dead_lettered": int,
        "records_fallback": int,
        "records_lost": int,
        "successful": int,
        "failed": int,
        "skipped": int,
        "total": int,
        "message_count": int,
        "ref_count": int,
        "file_size_bytes": int,
        "max_size_bytes": int,
    }

    # Fields that contain URLs and should be sanitized
    URL_FIELDS = ["url", "bootstrap_servers"]

    # user:password@ credentials and sensitive query parameters
    CREDENTIALS_PATTERN = re.compile(r"(//)[^/@\s]+:[^/@\s]+@")
    SENSITIVE_PARAMS_PATTERN = re.compile(
        r"([?&])(sig|token|key|secret|password|auth)=[^&]*",
        re.IGNORECASE,
    )

    def _sanitize_url(self, url: str) -> str:
        url = self.CREDENTIALS_PATTERN.sub(r"\1[REDACTED]@", url)
        return self.SENSITIVE_PARAMS_PATTERN.sub(r"\1\2=[REDACTED]", url)

    def _sanitize_value(self, key: str, value: Any) -> Any:
        if key in self.URL_FIELDS and isinstance(value, str):
            return self._sanitize_url(value)
        return value

    def _ensure_type(self, field: str, value: Any) -> Any:
        """
        Ensure field has its declared numeric type.

        Returns None when conversion fails so a bad value never turns a
        numeric column into a string column.
        """
        if field not in self.NUMERIC_FIELDS or value is None:
            return value

        expected_type = self.NUMERIC_FIELDS[field]
        try:
            return expected_type(value)
        except (ValueError, TypeError):
            return None

    @staticmethod
    def _base_log_entry(record: logging.LogRecord) -> dict[str, Any]:
        return {
            "ts": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

    @staticmethod
    def _inject_context(log_entry: dict[str, Any], log_context: dict[str, Any]) -> None:
        for field in ("cycle_id", "stage", "worker_id", "report_type"):
            if log_context.get(field):
                log_entry[field] = log_context[field]

    @staticmethod
    def _should_include_source_location(record: logging.LogRecord) -> bool:
        return record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL)

    def _inject_extra_fields(self, log_entry: dict[str, Any], record: logging.LogRecord) -> None:
        # An explicit report_type extra overrides the task context
        report_type = getattr(record, "report_type", None)
        if report_type:
            log_entry["report_type"] = report_type

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                typed_value = self._ensure_type(field, value)
                log_entry[field] = self._sanitize_value(field, typed_value)

    def _inject_exception(self, log_entry: dict[str, Any], record: logging.LogRecord) -> None:
        if not record.exc_info:
            return

        exc_type, exc_value, _ = record.exc_info
        log_entry["exception"] = {
            "type": exc_type.__name__ if exc_type else None,
            "message": str(exc_value) if exc_value else None,
            "stacktrace": self.formatException(record.exc_info),
        }

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as a single JSON line."""
        log_entry = self._base_log_entry(record)

        self._inject_context(log_entry, get_log_context())

        if self._should_include_source_location(record):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        # Type validation happens before sanitization
        self._inject_extra_fields(log_entry, record)
        self._inject_exception(log_entry, record)

        return json.dumps(log_entry, default=json_serializer, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter with color-coded log levels.

    Colors are auto-disabled when output is not a TTY (pipes, files).
    """

    # ANSI color codes
    COLORS = {
        logging.DEBUG: "\033[36m",  # Cyan
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._use_colors = sys.stdout.isatty()

    def _format_level_name(self, record: logging.LogRecord) -> str:
        level_name = record.levelname
        if not self._use_colors:
            return level_name

        color = self.COLORS.get(record.levelno, "")
        if not color:
            return level_name

        return f"{color}{level_name}{self.RESET}"

    @staticmethod
    def _build_prefix(level_name: str, log_context: dict[str, Any]) -> str:
        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            level_name,
        ]

        if log_context.get("stage"):
            parts.append(f"[{log_context['stage']}]")

        return " - ".join(parts)

    @staticmethod
    def _build_tags(record: logging.LogRecord, log_context: dict[str, Any]) -> list[str]:
        cycle_id = log_context.get("cycle_id")
        report_type = getattr(record, "report_type", None) or log_context.get("report_type")
        batch_id = getattr(record, "batch_id", None)

        tags = []
        if cycle_id:
            tags.append(f"[{cycle_id[-11:]}]")
        if report_type:
            tags.append(f"[{report_type}]")
        if batch_id:
            tags.append(f"[batch:{batch_id[:8]}]")
        return tags

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for console output with optional color coding."""
        log_context = get_log_context()

        level_name = self._format_level_name(record)
        prefix = self._build_prefix(level_name, log_context)
        tags = self._build_tags(record, log_context)

        message = record.getMessage()
        if tags:
            message = f"{' '.join(tags)} {message}"

        line = f"{prefix} - {message}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line
