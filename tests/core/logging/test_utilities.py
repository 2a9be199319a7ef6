"""Tests for logging utility functions."""

import logging
from unittest.mock import MagicMock

from core.errors.exceptions import HttpServerError, TransportError
from core.logging.utilities import (
    _RESERVED_LOG_KEYS,
    format_cycle_output,
    log_exception,
    log_with_context,
)


class TestLogWithContext:

    def test_logs_message_at_given_level(self):
        logger = MagicMock()
        log_with_context(logger, logging.INFO, "test message")

        logger.log.assert_called_once_with(
            logging.INFO, "test message", exc_info=None, extra={}
        )

    def test_passes_extra_fields(self):
        logger = MagicMock()
        log_with_context(
            logger, logging.WARNING, "slow request",
            url="https://example.test/a.csv", duration_ms=500,
        )

        logger.log.assert_called_once_with(
            logging.WARNING, "slow request",
            exc_info=None,
            extra={"url": "https://example.test/a.csv", "duration_ms": 500},
        )

    def test_handles_exc_info_separately(self):
        logger = MagicMock()
        log_with_context(
            logger, logging.ERROR, "failed",
            exc_info=True, batch_id="b-2",
        )

        logger.log.assert_called_once_with(
            logging.ERROR, "failed",
            exc_info=True,
            extra={"batch_id": "b-2"},
        )

    def test_filters_all_reserved_keys(self):
        logger = MagicMock()
        # Exclude "msg" and "args" since those are also positional params of log_with_context
        safe_reserved = {k: "value" for k in _RESERVED_LOG_KEYS if k not in ("msg", "args")}
        safe_reserved["custom_field"] = "kept"

        log_with_context(logger, logging.INFO, "test", **safe_reserved)

        _, kwargs = logger.log.call_args
        assert kwargs["extra"] == {"custom_field": "kept"}


class TestLogException:

    def test_adds_category_and_message(self):
        logger = MagicMock()
        err = HttpServerError(503, url="https://example.test/a.csv")

        log_exception(logger, err, "Fetch failed", url=err.url)

        args, kwargs = logger.log.call_args
        assert args == (logging.ERROR, "Fetch failed")
        assert kwargs["exc_info"] is err
        assert kwargs["extra"]["error_category"] == "transient"
        assert kwargs["extra"]["error_type"] == "HttpServerError"
        assert "503" in kwargs["extra"]["error_message"]
        assert kwargs["extra"]["url"] == "https://example.test/a.csv"

    def test_without_traceback(self):
        logger = MagicMock()
        log_exception(logger, TransportError("refused"), "Unreachable", include_traceback=False)

        _, kwargs = logger.log.call_args
        assert "exc_info" not in kwargs

    def test_custom_level(self):
        logger = MagicMock()
        log_exception(logger, ValueError("x"), "warn only", level=logging.WARNING)

        args, _ = logger.log.call_args
        assert args[0] == logging.WARNING

    def test_plain_exception_has_no_category(self):
        logger = MagicMock()
        log_exception(logger, ValueError("x"), "bad")

        _, kwargs = logger.log.call_args
        assert "error_category" not in kwargs["extra"]

    def test_truncates_long_messages(self):
        logger = MagicMock()
        log_exception(logger, ValueError("x" * 1000), "long")

        _, kwargs = logger.log.call_args
        assert len(kwargs["extra"]["error_message"]) == 503
        assert kwargs["extra"]["error_message"].endswith("...")


class TestFormatCycleOutput:

    def test_basic(self):
        assert format_cycle_output("c-1", 2, 1) == "Cycle c-1: total=3 (succeeded=2, failed=1)"

    def test_includes_skipped_when_present(self):
        line = format_cycle_output("c-1", 1, 0, 2)
        assert line == "Cycle c-1: total=3 (succeeded=1, failed=0, skipped=2)"

    def test_includes_duration(self):
        line = format_cycle_output("c-1", 3, 0, 0, 4.25)
        assert line.endswith(" in 4.2s")
