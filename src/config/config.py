"""Storm report collector configuration from YAML file.

Loads from config/config.yaml with all settings in one place:
- Kafka connection and primary topic
- Dead-letter topic and file fallback
- Report source (base URL, report types, batching)
- Scheduler (cron, concurrency, fetch backoff)
- Publish retry and observability settings

Environment variables ARE supported using ${VAR_NAME} and
${VAR_NAME:-default} syntax in YAML files.
"""

import json
import logging
import os
import re
import sys
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from apscheduler.triggers.cron import CronTrigger

from collector.common.types import SourceType
from core.resilience.retry import DEFAULT_FETCH_RETRY, DEFAULT_PUBLISH_RETRY, RetryConfig

logger = logging.getLogger(__name__)

DEFAULT_REPORTS_BASE_URL = "https://www.spc.noaa.gov/climo/reports/"
DEFAULT_FILENAME_TEMPLATE = "{date:%y%m%d}_rpts_{source_type}.csv"
DEFAULT_BATCH_SIZE = 500

_TRUE_VALUES = ("1", "true", "yes", "on")


def _as_bool(value: Any) -> bool:
    # bool('false') would be True
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _as_optional_float(value: Any) -> Optional[float]:
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "none", "null")):
        return None
    return float(value)


def _as_list(value: Any) -> List[str]:
    """Accept a YAML list or a comma-separated env string."""
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value]


def _retry_config(defaults: RetryConfig, values: Dict[str, Any] | None) -> RetryConfig:
    """Overlay a partial ``{max_retries, base_delay, ...}`` mapping on a preset."""
    return replace(defaults, **(values or {}))


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return dict."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR_NAME} and ${VAR_NAME:-default} environment variables in config data."""
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        pattern = r"\$\{([^}:]+)(?::-(([^}]*))?)?\}"

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else match.group(0)
            return os.getenv(var_name, default_value)

        return re.sub(pattern, replacer, data)
    else:
        return data


# Default config file: config/config.yaml in src/ directory
DEFAULT_CONFIG_FILE = Path(__file__).parent / "config.yaml"


@dataclass
class KafkaSettings:
    """Broker connection and primary topic. Timing values in milliseconds."""

    bootstrap_servers: str = "kafka:9092"
    client_id: str = "csv-producer"
    topic: str = "raw-weather-reports"
    request_timeout_ms: int = 30000
    connect_timeout_ms: int = 10000
    acks: str = "all"
    compression_type: str = "none"
    linger_ms: int = 0

    def __post_init__(self):
        self.request_timeout_ms = int(self.request_timeout_ms)
        self.connect_timeout_ms = int(self.connect_timeout_ms)
        self.linger_ms = int(self.linger_ms)
        self.acks = str(self.acks)


@dataclass
class DeadLetterSettings:
    enabled: bool = True
    topic: str = "raw-weather-reports-dlq"
    include_stack_traces: bool = False
    fallback_directory: str = "./dlq-fallback"
    max_file_size_mb: float = 10.0

    def __post_init__(self):
        self.enabled = _as_bool(self.enabled)
        self.include_stack_traces = _as_bool(self.include_stack_traces)
        self.max_file_size_mb = float(self.max_file_size_mb)


@dataclass
class ReportSettings:
    base_url: str = DEFAULT_REPORTS_BASE_URL
    types: List[str] = field(default_factory=lambda: [t.value for t in SourceType])
    filename_template: str = DEFAULT_FILENAME_TEMPLATE
    batch_size: int = DEFAULT_BATCH_SIZE
    request_timeout_seconds: float = 60.0

    def __post_init__(self):
        self.types = _as_list(self.types)
        self.batch_size = int(self.batch_size)
        self.request_timeout_seconds = float(self.request_timeout_seconds)

    @property
    def source_types(self) -> List[SourceType]:
        return [SourceType(t) for t in self.types]


@dataclass
class SchedulerSettings:
    """Cycle scheduling, per-task bounds and the fetch backoff policy.

    ``fetch_retry`` delays are in seconds; the default schedule is
    30 / 60 / 120 minutes.
    """

    cron: str = "0 0 * * *"
    timezone: str = "UTC"
    run_on_start: bool = True
    max_concurrent: int = 3
    task_timeout_seconds: Optional[float] = None
    shutdown_timeout_seconds: float = 10.0
    fetch_retry: RetryConfig = field(default_factory=lambda: replace(DEFAULT_FETCH_RETRY))

    def __post_init__(self):
        self.run_on_start = _as_bool(self.run_on_start)
        self.max_concurrent = int(self.max_concurrent)
        self.task_timeout_seconds = _as_optional_float(self.task_timeout_seconds)
        self.shutdown_timeout_seconds = float(self.shutdown_timeout_seconds)
        if isinstance(self.fetch_retry, dict):
            self.fetch_retry = _retry_config(DEFAULT_FETCH_RETRY, self.fetch_retry)


@dataclass
class ObservabilitySettings:
    log_level: str = "INFO"
    json_logs: bool = True
    log_dir: str = "logs"
    log_to_stdout: bool = False
    health_enabled: bool = True
    health_port: int = 8080

    def __post_init__(self):
        self.log_level = str(self.log_level).upper()
        self.json_logs = _as_bool(self.json_logs)
        self.log_to_stdout = _as_bool(self.log_to_stdout)
        self.health_enabled = _as_bool(self.health_enabled)
        self.health_port = int(self.health_port)


@dataclass
class CollectorConfig:
    """Storm report collector configuration.

    Configuration structure:
        collector:
          kafka: {...}          # Connection and primary topic
          dead_letter: {...}    # DLQ topic and file fallback
          reports: {...}        # Remote source and batching
          scheduler:            # Cron, concurrency, fetch backoff
            fetch_retry: {...}
          publish_retry: {...}  # Broker publish backoff
          observability: {...}  # Logging and health server
    """

    kafka: KafkaSettings = field(default_factory=KafkaSettings)
    dead_letter: DeadLetterSettings = field(default_factory=DeadLetterSettings)
    reports: ReportSettings = field(default_factory=ReportSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    publish_retry: RetryConfig = field(default_factory=lambda: replace(DEFAULT_PUBLISH_RETRY))
    observability: ObservabilitySettings = field(default_factory=ObservabilitySettings)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> None:
        """Validate configuration for correctness and constraints.

        Raises:
            ValueError: On the first invalid setting found
        """
        if not self.kafka.bootstrap_servers:
            raise ValueError("kafka.bootstrap_servers is required")
        if not self.kafka.topic:
            raise ValueError("kafka.topic is required")

        self._validate_enum(
            {"acks": self.kafka.acks}, "acks", ["0", "1", "all", "-1"], "kafka"
        )
        self._validate_enum(
            {"compression_type": self.kafka.compression_type},
            "compression_type",
            ["none", "gzip", "snappy", "lz4", "zstd"],
            "kafka",
        )

        if self.dead_letter.enabled:
            if not self.dead_letter.topic:
                raise ValueError("dead_letter.topic is required when dead_letter.enabled is true")
            if self.dead_letter.topic == self.kafka.topic:
                raise ValueError(
                    f"dead_letter.topic must differ from kafka.topic, both are '{self.kafka.topic}'"
                )
        self._validate_min(
            asdict(self.dead_letter), "max_file_size_mb", 0, inclusive=False, context="dead_letter"
        )

        self._validate_reports()
        self._validate_scheduler()
        self._validate_retry(self.publish_retry, "publish_retry")

        self._validate_enum(
            asdict(self.observability),
            "log_level",
            ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            "observability",
        )
        self._validate_range(
            asdict(self.observability), "health_port", 0, 65535, "observability"
        )

    def _validate_reports(self) -> None:
        reports = self.reports
        if not reports.base_url:
            raise ValueError("reports.base_url is required")
        if not reports.types:
            raise ValueError("reports.types must list at least one report type")

        valid = [t.value for t in SourceType]
        for report_type in reports.types:
            if report_type not in valid:
                raise ValueError(
                    f"reports: unknown report type '{report_type}', must be one of {valid}"
                )
        if len(set(reports.types)) != len(reports.types):
            raise ValueError(f"reports.types contains duplicates: {reports.types}")

        self._validate_min(asdict(reports), "batch_size", 1, inclusive=True, context="reports")
        self._validate_min(
            asdict(reports), "request_timeout_seconds", 0, inclusive=False, context="reports"
        )
        if "{source_type" not in reports.filename_template:
            raise ValueError("reports.filename_template must contain {source_type}")

    def _validate_scheduler(self) -> None:
        scheduler = self.scheduler
        try:
            CronTrigger.from_crontab(scheduler.cron, timezone=scheduler.timezone)
        except ValueError as e:
            raise ValueError(f"scheduler: invalid cron expression '{scheduler.cron}': {e}") from e

        settings = {
            "max_concurrent": scheduler.max_concurrent,
            "shutdown_timeout_seconds": scheduler.shutdown_timeout_seconds,
        }
        self._validate_min(settings, "max_concurrent", 1, inclusive=True, context="scheduler")
        self._validate_min(
            settings, "shutdown_timeout_seconds", 0, inclusive=True, context="scheduler"
        )
        if scheduler.task_timeout_seconds is not None:
            self._validate_min(
                {"task_timeout_seconds": scheduler.task_timeout_seconds},
                "task_timeout_seconds",
                0,
                inclusive=False,
                context="scheduler",
            )
        self._validate_retry(scheduler.fetch_retry, "scheduler.fetch_retry")

    def _validate_retry(self, retry: RetryConfig, context: str) -> None:
        settings = asdict(retry)
        self._validate_min(settings, "max_retries", 0, inclusive=True, context=context)
        self._validate_min(settings, "base_delay", 0, inclusive=True, context=context)
        self._validate_min(settings, "max_delay", 0, inclusive=True, context=context)
        self._validate_min(settings, "exponential_base", 1, inclusive=True, context=context)

    @staticmethod
    def _validate_enum(
        settings: Dict[str, Any],
        key: str,
        valid_values: List[Any],
        context: str
    ) -> None:
        """Validate that a setting's value is in a list of valid values."""
        if key in settings and settings[key] not in valid_values:
            raise ValueError(
                f"{context}: {key} must be one of {valid_values}, "
                f"got '{settings[key]}'"
            )

    @staticmethod
    def _validate_min(
        settings: Dict[str, Any],
        key: str,
        min_value: float,
        inclusive: bool,
        context: str
    ) -> None:
        """Validate that a setting's value meets a minimum threshold."""
        if key in settings:
            value = settings[key]
            if inclusive and value < min_value:
                raise ValueError(
                    f"{context}: {key} must be >= {min_value}, got {value}"
                )
            elif not inclusive and value <= min_value:
                raise ValueError(
                    f"{context}: {key} must be > {min_value}, got {value}"
                )

    @staticmethod
    def _validate_range(
        settings: Dict[str, Any],
        key: str,
        min_value: float,
        max_value: float,
        context: str
    ) -> None:
        """Validate that a setting's value is within a range (inclusive)."""
        if key in settings:
            value = settings[key]
            if not (min_value <= value <= max_value):
                raise ValueError(
                    f"{context}: {key} must be between {min_value} and {max_value}, got {value}"
                )


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base dict."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def build_config(data: Dict[str, Any]) -> CollectorConfig:
    """Build a CollectorConfig from an already-expanded ``collector:`` mapping."""
    scheduler = dict(data.get("scheduler") or {})
    publish_retry = data.get("publish_retry") or {}

    return CollectorConfig(
        kafka=KafkaSettings(**(data.get("kafka") or {})),
        dead_letter=DeadLetterSettings(**(data.get("dead_letter") or {})),
        reports=ReportSettings(**(data.get("reports") or {})),
        scheduler=SchedulerSettings(**scheduler),
        publish_retry=_retry_config(DEFAULT_PUBLISH_RETRY, publish_retry),
        observability=ObservabilitySettings(**(data.get("observability") or {})),
    )


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> CollectorConfig:
    """Load collector configuration from config.yaml file.

    Environment variables ARE supported using ${VAR_NAME} syntax in YAML files.

    Raises:
        FileNotFoundError: If the config file does not exist
        ValueError: If the file is malformed or a setting is invalid
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n" f"Expected file: config/config.yaml"
        )

    logger.info(f"Loading configuration from file: {config_path}")
    yaml_data = load_yaml(config_path)
    yaml_data = _expand_env_vars(yaml_data)

    if "collector" not in yaml_data:
        raise ValueError(
            "Invalid config file: missing 'collector:' section\n"
            "See src/config/config.yaml for correct structure"
        )

    collector_data = yaml_data["collector"] or {}

    if overrides:
        logger.debug(f"Applying overrides: {list(overrides.keys())}")
        collector_data = _deep_merge(collector_data, overrides)

    try:
        config = build_config(collector_data)
    except TypeError as e:
        # Unknown keys surface as unexpected keyword arguments
        raise ValueError(f"Invalid config file {config_path}: {e}") from e

    logger.debug("Configuration loaded successfully:")
    logger.debug(f"  - Bootstrap servers: {config.kafka.bootstrap_servers}")
    logger.debug(f"  - Report types: {config.reports.types}")
    logger.debug(f"  - Dead-letter enabled: {config.dead_letter.enabled}")

    logger.debug("Validating configuration...")
    config.validate()
    logger.debug("Configuration validation passed")

    return config


_collector_config: Optional[CollectorConfig] = None


def get_config() -> CollectorConfig:
    """Get or load the singleton collector config instance."""
    global _collector_config
    if _collector_config is None:
        _collector_config = load_config()
    return _collector_config


def set_config(config: CollectorConfig) -> None:
    """Set the singleton collector config instance (useful for testing)."""
    global _collector_config
    _collector_config = config


def reset_config() -> None:
    """Reset the singleton config instance (forces reload on next get_config() call)."""
    global _collector_config
    _collector_config = None


def _cli_main() -> int:
    """CLI entry point for config validation and debugging."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Storm Report Collector Configuration Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Validate configuration
  python -m config.config --validate

  # Show merged configuration
  python -m config.config --show-merged

  # JSON output for automation
  python -m config.config --validate --json
        """,
    )

    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate configuration structure and completeness",
    )
    parser.add_argument(
        "--show-merged",
        action="store_true",
        help="Display effective configuration as YAML",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config.yaml file (default: src/config/config.yaml)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format instead of human-readable",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    if not args.validate and not args.show_merged:
        parser.print_help()
        return 0

    try:
        config = load_config(config_path=args.config)
    except FileNotFoundError as e:
        if args.json:
            print(json.dumps({"error": str(e)}))
        else:
            print(f"✗ Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        if args.json:
            print(json.dumps({"error": str(e)}))
        else:
            print(f"✗ Validation error: {e}", file=sys.stderr)
        return 1

    output: Dict[str, Any] = {}

    if args.validate:
        # Validation happens during load_config(), if we got here it passed
        if args.json:
            output["validation"] = {"passed": True, "errors": []}
        else:
            print("✓ Configuration validation passed")
            print(f"  - Report types: {', '.join(config.reports.types)}")
            print(f"  - Schedule: {config.scheduler.cron}")
            print(
                "  - Dead-letter: "
                + (config.dead_letter.topic if config.dead_letter.enabled else "disabled")
            )

    if args.show_merged:
        if args.json:
            output["merged_config"] = config.to_dict()
        else:
            print("\nConfiguration:")
            print("=" * 80)
            print(yaml.dump(config.to_dict(), default_flow_style=False, sort_keys=False))
            print("=" * 80)

    if args.json:
        print(json.dumps(output, indent=2))

    return 0


if __name__ == "__main__":
    sys.exit(_cli_main())
