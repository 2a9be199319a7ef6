"""
Prometheus metrics for collector monitoring.

Focused on essential metrics:
- Cycle runs and duration
- Rows processed, published, dead-lettered, written to fallback, or lost
- Fetch duration and fetch/publish retries
- Broker connection health

All metrics live on the default prometheus_client REGISTRY and are served
by the health server's /metrics route.
"""

from prometheus_client import Counter, Gauge, Histogram

PREFIX = "collector_"

# =============================================================================
# Cycle Metrics
# =============================================================================

job_runs_counter = Counter(
    f"{PREFIX}job_runs_total",
    "Total number of collector cycles by result",
    labelnames=["status"],
)

job_duration_seconds = Histogram(
    f"{PREFIX}job_duration_seconds",
    "Wall-clock duration of a full collector cycle",
    buckets=[1, 5, 10, 30, 60, 120],
)

# =============================================================================
# Row Accounting
# =============================================================================

rows_processed_counter = Counter(
    f"{PREFIX}rows_processed_total",
    "Rows decoded from report documents",
    labelnames=["report_type"],
)

rows_published_counter = Counter(
    f"{PREFIX}rows_published_total",
    "Rows delivered to the primary topic",
    labelnames=["report_type"],
)

rows_dead_lettered_counter = Counter(
    f"{PREFIX}rows_dead_lettered_total",
    "Rows delivered to the dead-letter topic",
    labelnames=["report_type"],
)

fallback_records_counter = Counter(
    f"{PREFIX}fallback_records_total",
    "Rows persisted to dead-letter fallback files",
    labelnames=["report_type"],
)

records_lost_counter = Counter(
    f"{PREFIX}records_lost_total",
    "Rows that reached no durable destination",
    labelnames=["report_type"],
)

# =============================================================================
# Fetch / Publish
# =============================================================================

csv_fetch_duration_seconds = Histogram(
    f"{PREFIX}csv_fetch_duration_seconds",
    "Time spent fetching one report document",
    labelnames=["report_type"],
    buckets=[0.5, 1, 2, 5, 10, 30],
)

retry_counter = Counter(
    f"{PREFIX}retry_total",
    "Fetch retries scheduled after a 5xx response",
    labelnames=["report_type"],
)

publish_retries_counter = Counter(
    f"{PREFIX}publish_retries_total",
    "Batch publish attempts retried after a broker failure",
    labelnames=["topic"],
)

broker_connected_gauge = Gauge(
    f"{PREFIX}broker_connected",
    "Broker connection status (1=connected, 0=disconnected)",
)


# =============================================================================
# Convenience Functions
# =============================================================================


def record_job_run(status: str, duration_seconds: float) -> None:
    """Record a finished cycle."""
    job_runs_counter.labels(status=status).inc()
    job_duration_seconds.observe(duration_seconds)


def record_rows_processed(report_type: str, count: int) -> None:
    if count:
        rows_processed_counter.labels(report_type=report_type).inc(count)


def record_rows_published(report_type: str, count: int) -> None:
    if count:
        rows_published_counter.labels(report_type=report_type).inc(count)


def record_rows_dead_lettered(report_type: str, count: int) -> None:
    if count:
        rows_dead_lettered_counter.labels(report_type=report_type).inc(count)


def record_fallback_records(report_type: str, count: int) -> None:
    if count:
        fallback_records_counter.labels(report_type=report_type).inc(count)


def record_records_lost(report_type: str, count: int) -> None:
    if count:
        records_lost_counter.labels(report_type=report_type).inc(count)


def record_fetch_retry(report_type: str) -> None:
    retry_counter.labels(report_type=report_type).inc()


def record_publish_retry(topic: str) -> None:
    publish_retries_counter.labels(topic=topic).inc()


def update_connection_status(connected: bool) -> None:
    """Update broker connection status."""
    broker_connected_gauge.set(1 if connected else 0)


__all__ = [
    # Metrics
    "job_runs_counter",
    "job_duration_seconds",
    "rows_processed_counter",
    "rows_published_counter",
    "rows_dead_lettered_counter",
    "fallback_records_counter",
    "records_lost_counter",
    "csv_fetch_duration_seconds",
    "retry_counter",
    "publish_retries_counter",
    "broker_connected_gauge",
    # Helper functions
    "record_job_run",
    "record_rows_processed",
    "record_rows_published",
    "record_rows_dead_lettered",
    "record_fallback_records",
    "record_records_lost",
    "record_fetch_retry",
    "record_publish_retry",
    "update_connection_status",
]
