"""Batch publishing with bounded retry and dead-letter handoff."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from collector.common.connection import BrokerConnectionManager
from collector.common.dlq.manager import (
    DeadLetterDestination,
    DeadLetterManager,
)
from collector.common.metrics import (
    record_publish_retry,
    record_records_lost,
    record_rows_published,
)
from collector.common.types import Batch, PublishResult
from core.errors.exceptions import PublishError
from core.resilience.retry import DEFAULT_PUBLISH_RETRY, RetryConfig

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class BatchPublisher:
    """Publishes whole batches to a topic, retrying before dead-lettering.

    A batch is all-or-nothing: either every record is acknowledged by the
    broker, or the full unmodified batch goes to the DeadLetterManager.
    Each attempt acquires and releases the shared connection, so a broker
    that cannot be reached counts as a failed attempt. Errors classified as
    permanent go straight to dead-lettering.
    """

    def __init__(
        self,
        connection: BrokerConnectionManager,
        dead_letters: DeadLetterManager,
        retry: RetryConfig | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.connection = connection
        self.dead_letters = dead_letters
        self.retry = retry or DEFAULT_PUBLISH_RETRY
        self._sleep = sleep

    async def _attempt(self, destination: str, batch: Batch) -> None:
        producer = await self.connection.acquire()
        try:
            await producer.send_batch(
                destination, [(None, message) for message in batch.messages()]
            )
        finally:
            await self.connection.release()

    async def publish(self, destination: str, batch: Batch) -> PublishResult:
        """Deliver ``batch`` to ``destination``.

        Returns:
            ``delivered=True, count=len(batch)`` on success, otherwise
            ``delivered=False, count=0`` after the batch was handed to
            dead-letter routing.
        """
        if len(batch) == 0:
            return PublishResult(delivered=True, count=0, attempts=0)

        report_type = batch.source_type.value
        last_error: Exception | None = None
        attempt = 0

        for attempt in range(self.retry.max_attempts):
            try:
                await self._attempt(destination, batch)
            except Exception as e:
                last_error = e
                if not self.retry.should_retry(e, attempt):
                    break

                delay = self.retry.get_delay(attempt)
                record_publish_retry(destination)
                logger.warning(
                    "Batch publish failed, will retry",
                    extra={
                        "topic": destination,
                        "attempt": attempt + 1,
                        "max_attempts": self.retry.max_attempts,
                        "delay_seconds": round(delay, 2),
                        "batch_size": len(batch),
                        "batch_sequence": batch.sequence,
                        "error_type": type(e).__name__,
                        "error_message": str(e)[:200],
                        "report_type": report_type,
                    },
                )
                await self._sleep(delay)
                continue

            record_rows_published(report_type, len(batch))
            if attempt > 0:
                logger.info(
                    "Batch publish succeeded after retry",
                    extra={"topic": destination, "attempt": attempt + 1, "report_type": report_type},
                )
            return PublishResult(delivered=True, count=len(batch), attempts=attempt + 1)

        attempts_made = attempt + 1
        cause = PublishError(
            f"Batch publish to {destination} failed after {attempts_made} attempts",
            topic=destination,
            cause=last_error,
        )
        logger.error(
            "Batch publish retries exhausted",
            extra={
                "topic": destination,
                "attempt": attempts_made,
                "batch_size": len(batch),
                "batch_sequence": batch.sequence,
                "url": batch.source_url,
                "error_message": str(last_error)[:200],
                "report_type": report_type,
            },
        )

        result = await self.dead_letters.route(batch, last_error or cause, attempts_made)
        if result.destination == DeadLetterDestination.DISABLED:
            record_records_lost(report_type, len(batch))
            logger.error(
                "Dead-lettering disabled, batch dropped",
                extra={
                    "topic": destination,
                    "records_lost": len(batch),
                    "batch_sequence": batch.sequence,
                    "url": batch.source_url,
                    "error_message": str(last_error)[:200],
                    "report_type": report_type,
                },
            )

        return PublishResult(
            delivered=False, count=0, attempts=attempts_made, dead_letter=result
        )
