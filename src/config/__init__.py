"""Configuration loading for the storm report collector.

Configuration Structure
-----------------------

src/config/config.yaml holds every setting under a single ``collector:`` key:

    collector:
      kafka:          # Broker connection and primary topic
      dead_letter:    # DLQ topic and file fallback
      reports:        # Remote source, report types, batching
      scheduler:      # Cron, concurrency, fetch backoff
      publish_retry:  # Broker publish backoff
      observability:  # Logging and health server

Usage Examples
--------------

    >>> from config import load_config, get_config
    >>>
    >>> config = load_config()
    >>> config = get_config()  # singleton
    >>> config.kafka.topic
    'raw-weather-reports'

Configuration Priority
---------------------

1. Environment variables referenced as ${VAR} in the YAML
2. YAML values
3. Dataclass defaults
"""

from config.config import (
    CollectorConfig,
    DeadLetterSettings,
    KafkaSettings,
    ObservabilitySettings,
    ReportSettings,
    SchedulerSettings,
    get_config,
    load_config,
    reset_config,
    set_config,
)

__all__ = [
    # Core config functions
    "load_config",
    "get_config",
    "set_config",
    "reset_config",
    # Config classes
    "CollectorConfig",
    "KafkaSettings",
    "DeadLetterSettings",
    "ReportSettings",
    "SchedulerSettings",
    "ObservabilitySettings",
]
