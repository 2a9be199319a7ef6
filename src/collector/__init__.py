"""
Storm report collector.

Fetches the daily storm report CSV documents (tornado, hail, wind) on a
cron schedule and publishes every row to Kafka, with bounded retry,
dead-letter routing and a local file fallback.

Architecture:
    JobOrchestrator -> run_with_fetch_retry -> ReportIngestor
        ReportFetcher (aiohttp) -> iter_records / iter_batches (csv)
        BatchPublisher -> BrokerConnectionManager (aiokafka)
                       -> DeadLetterManager -> fallback file

Run with ``python -m collector``.
"""

__version__ = "1.0.0"
