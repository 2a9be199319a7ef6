"""
Structured logging module.

Provides JSON logging with cycle/report context propagation.
"""

from core.logging.context import (
    clear_log_context,
    get_log_context,
    set_log_context,
)
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.setup import (
    generate_cycle_id,
    get_log_file_path,
    log_collector_startup,
    setup_logging,
)
from core.logging.utilities import format_cycle_output, log_exception, log_with_context

__all__ = [
    # Setup
    "setup_logging",
    "generate_cycle_id",
    "get_log_file_path",
    "log_collector_startup",
    # Formatters
    "JSONFormatter",
    "ConsoleFormatter",
    # Context
    "set_log_context",
    "get_log_context",
    "clear_log_context",
    # Utilities
    "log_with_context",
    "log_exception",
    "format_cycle_output",
]
