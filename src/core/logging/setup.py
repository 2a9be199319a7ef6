"""Logging setup and configuration."""

import io
import logging
import secrets
import shutil
import sys
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from core.logging.context import set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter

# Default settings
DEFAULT_LOG_DIR = Path("logs")
DEFAULT_ROTATION_WHEN = "midnight"
DEFAULT_ROTATION_INTERVAL = 1
DEFAULT_BACKUP_COUNT = 7
DEFAULT_CONSOLE_LEVEL = logging.INFO
DEFAULT_FILE_LEVEL = logging.DEBUG

# Noisy loggers to suppress
NOISY_LOGGERS = [
    "aiohttp",
    "aiohttp.access",
    "aiokafka",
    "apscheduler",
]


class ArchivingTimedRotatingFileHandler(TimedRotatingFileHandler):
    """
    TimedRotatingFileHandler that moves rotated files to an archive folder.

    When a log file is rotated (e.g., collector.log -> collector.log.2026-01-22),
    the backup is moved to ``archive_dir`` (default: an ``archive``
    subdirectory next to the live file) to keep the log directory clean.
    """

    def __init__(
        self,
        filename,
        when="midnight",
        interval=1,
        backupCount=0,
        encoding=None,
        delay=False,
        utc=False,
        archive_dir=None,
    ):
        super().__init__(filename, when, interval, backupCount, encoding, delay, utc)
        if archive_dir:
            self.archive_dir = Path(archive_dir)
        else:
            self.archive_dir = Path(self.baseFilename).parent / "archive"

        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def doRollover(self):
        super().doRollover()

        log_path = Path(self.baseFilename)
        for rotated_file in log_path.parent.glob(f"{log_path.name}.*"):
            if rotated_file == log_path:
                continue

            archive_file = self.archive_dir / rotated_file.name
            try:
                shutil.move(str(rotated_file), str(archive_file))
            except OSError as e:
                # Can't use the logger from inside a handler
                print(
                    f"Warning: Failed to archive {rotated_file}: {e}", file=sys.stderr
                )


def get_log_file_path(
    log_dir: Path,
    name: str = "collector",
    instance_id: str | None = None,
) -> Path:
    """
    Build log file path with a date subfolder.

    Structure: {log_dir}/{YYYY-MM-DD}/{name}_{MMDD}_{HHMM}[_{instance_id}].log

    Examples:
        logs/2026-01-05/collector_0105_1430.log
        logs/2026-01-05/collector_0105_1430_brave-golden-tiger.log
    """
    now = datetime.now()
    date_folder = now.strftime("%Y-%m-%d")
    base_name = f"{name}_{now:%m%d}_{now:%H%M}"

    if instance_id:
        base_name = f"{base_name}_{instance_id}"

    return log_dir / date_folder / f"{base_name}.log"


def _stdout_handler() -> logging.StreamHandler:
    if sys.platform == "win32":
        safe_stdout = io.TextIOWrapper(
            sys.stdout.buffer, encoding="utf-8", errors="replace"
        )
        return logging.StreamHandler(safe_stdout)
    return logging.StreamHandler(sys.stdout)


def setup_logging(
    name: str = "collector",
    log_dir: Path | None = None,
    json_format: bool = True,
    console_level: int = DEFAULT_CONSOLE_LEVEL,
    file_level: int = DEFAULT_FILE_LEVEL,
    rotation_when: str = DEFAULT_ROTATION_WHEN,
    rotation_interval: int = DEFAULT_ROTATION_INTERVAL,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
    worker_id: str | None = None,
    log_to_stdout: bool = False,
) -> logging.Logger:
    """
    Configure console logging plus an optional auto-archiving rotating file.

    Args:
        name: Logger name and log file prefix
        log_dir: Directory for log files (default: ./logs)
        json_format: Use JSON format for file logs (default: True)
        console_level: Console handler level (default: INFO)
        file_level: File handler level (default: DEBUG)
        rotation_when: When to rotate logs - 'midnight', 'H' (hourly), 'M' (minutes)
        rotation_interval: Interval for rotation (default: 1)
        backup_count: Number of backup files to keep (default: 7)
        suppress_noisy: Quiet down Kafka, HTTP and scheduler library loggers
        worker_id: Worker identifier for context and log filename
        log_to_stdout: Send all log output to stdout only, skipping the file
            handler. Useful for containerized deployments.

    Returns:
        Configured logger instance
    """
    log_dir = log_dir or DEFAULT_LOG_DIR

    if worker_id:
        set_log_context(worker_id=worker_id)

    console_handler = _stdout_handler()
    console_handler.setFormatter(ConsoleFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    root_logger.handlers.clear()

    log_file: Path | None = None
    if log_to_stdout:
        console_handler.setLevel(min(console_level, file_level))
        root_logger.addHandler(console_handler)
    else:
        console_handler.setLevel(console_level)

        log_file = get_log_file_path(log_dir, name=name, instance_id=worker_id)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        if json_format:
            file_formatter = JSONFormatter()
        else:
            file_formatter = logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )

        # Structure: logs/archive/date
        try:
            relative_path = log_file.relative_to(log_dir)
            archive_dir = log_dir / "archive" / relative_path.parent
        except ValueError:
            archive_dir = log_file.parent / "archive"

        file_handler = ArchivingTimedRotatingFileHandler(
            log_file,
            when=rotation_when,
            interval=rotation_interval,
            backupCount=backup_count,
            encoding="utf-8",
            archive_dir=archive_dir,
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(file_formatter)

        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)

    if suppress_noisy:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    logger = logging.getLogger(name)
    if log_file is None:
        logger.debug("Logging initialized: stdout-only mode")
    else:
        logger.debug(f"Logging initialized: file={log_file}, json={json_format}")

    return logger


def log_collector_startup(
    logger: logging.Logger,
    name: str,
    bootstrap_servers: str,
    topic: str,
    dlq_topic: str | None = None,
    report_types: list[str] | None = None,
    cron: str | None = None,
    extra_config: dict | None = None,
) -> None:
    """
    Log the startup banner with the collector's effective configuration.

    Bootstrap server and topic mismatches are the most common deployment
    error, so they are always printed first.
    """
    logger.info("=" * 70)
    logger.info("Starting %s", name)
    logger.info("=" * 70)
    logger.info("Kafka bootstrap servers: %s", bootstrap_servers)
    logger.info("Output topic: %s", topic)

    if dlq_topic:
        logger.info("Dead-letter topic: %s", dlq_topic)
    else:
        logger.info("Dead-letter topic: disabled")
    if report_types:
        logger.info("Report types: %s", ", ".join(report_types))
    if cron:
        logger.info("Schedule: %s", cron)

    if extra_config:
        for key, value in extra_config.items():
            logger.info("%s: %s", key, value)

    logger.info("=" * 70)


def generate_cycle_id() -> str:
    """
    Generate unique cycle identifier.

    Format: c-YYYYMMDD-HHMMSS-XXXX where XXXX is random hex.
    """
    ts = datetime.now().strftime("%Y%m%d-%H%M%S")
    suffix = secrets.token_hex(2)
    return f"c-{ts}-{suffix}"
