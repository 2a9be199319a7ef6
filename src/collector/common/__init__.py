"""Infrastructure shared by the collector's fetch and publish paths.

This package provides:
- BrokerConnectionManager: Shared, reference-counted broker connection
- MessageProducer: JSON producer over aiokafka
- BatchPublisher: Batch publish with retry and dead-letter handoff
- DeadLetterManager: Dead-letter topic with file fallback
- HealthCheckServer: Liveness, readiness and metrics endpoints

Import classes directly from submodules to avoid loading heavy dependencies:
    from collector.common.connection import BrokerConnectionManager
    from collector.common.publisher import BatchPublisher
"""

# Don't import concrete implementations here to avoid loading
# heavy dependencies (aiokafka, aiohttp, etc.) at package import time.

__all__: list[str] = []
