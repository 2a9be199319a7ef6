"""Fetch, decode and publish one report document."""

import asyncio
import logging
import time
from collections.abc import Iterator

from collector.common.connection import BrokerConnectionManager
from collector.common.dlq.manager import DeadLetterDestination
from collector.common.metrics import record_records_lost, record_rows_processed
from collector.common.publisher import BatchPublisher
from collector.common.types import IngestResult, PublishResult, Record, SourceType
from collector.reports.fetcher import ReportFetcher
from collector.reports.parser import iter_batches, iter_records
from config.config import DEFAULT_BATCH_SIZE
from core.logging.utilities import log_exception, log_with_context

logger = logging.getLogger(__name__)


class ReportIngestor:
    """Runs fetch, parse and publish for a single source URL.

    Fetch errors propagate unchanged so the scheduler's retry state machine
    can classify them. Publish failures never propagate: each failed batch
    is already dead-lettered by the publisher and only tallied here.

    When a connection manager is given, one reference is held for the whole
    batch loop so the producer is not torn down and rebuilt between batches.

    If the task is cancelled (task timeout or forced shutdown), the batch in
    flight and all undecoded rows are counted as lost and logged at CRITICAL
    before the cancellation propagates.
    """

    def __init__(
        self,
        fetcher: ReportFetcher,
        publisher: BatchPublisher,
        topic: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        connection: BrokerConnectionManager | None = None,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.fetcher = fetcher
        self.publisher = publisher
        self.topic = topic
        self.batch_size = batch_size
        self.connection = connection

    async def _hold_connection(self, source_type: SourceType) -> bool:
        if self.connection is None:
            return False
        try:
            await self.connection.acquire()
        except Exception as e:
            # Per-batch attempts still acquire on their own and dead-letter on failure
            log_exception(
                logger,
                e,
                "Broker unavailable before publishing, continuing per batch",
                level=logging.WARNING,
                include_traceback=False,
                topic=self.topic,
                report_type=source_type.value,
            )
            return False
        return True

    @staticmethod
    def _tally(result: IngestResult, batch_size: int, outcome: PublishResult) -> None:
        if outcome.delivered:
            result.published_rows += outcome.count
            return

        result.failed_batches += 1
        routed = outcome.dead_letter
        destination = routed.destination if routed else DeadLetterDestination.DISABLED
        if destination == DeadLetterDestination.TOPIC:
            result.dead_lettered_rows += batch_size
        elif destination == DeadLetterDestination.FILE:
            result.fallback_rows += batch_size
        else:
            result.lost_rows += batch_size

    def _record_cancelled(
        self, result: IngestResult, in_flight: int, records: Iterator[Record]
    ) -> None:
        # The batch being published and every row not yet decoded have no
        # durable destination once the task is cancelled
        undecoded = sum(1 for _ in records)
        lost = in_flight + undecoded
        result.total_rows += undecoded
        result.lost_rows += lost
        if in_flight:
            result.failed_batches += 1
        report_type = result.source_type.value
        record_records_lost(report_type, lost)
        logger.critical(
            "Report ingestion cancelled, remaining records lost",
            extra={
                "url": result.url,
                "topic": self.topic,
                "records_lost": lost,
                "records_total": result.total_rows,
                "records_published": result.published_rows,
                "report_type": report_type,
            },
        )

    async def ingest(self, source_type: SourceType, url: str) -> IngestResult:
        """Publish every record of the document at ``url``.

        Raises:
            SourceFetchError: When the document cannot be retrieved
        """
        source_type = SourceType(source_type)
        start = time.perf_counter()
        text = await self.fetcher.fetch(url, report_type=source_type.value)

        result = IngestResult(source_type=source_type, url=url)
        held = await self._hold_connection(source_type)
        records = iter_records(text, source_type)
        in_flight = 0
        try:
            batches = iter_batches(
                records,
                self.batch_size,
                source_type=source_type,
                source_url=url,
            )
            for batch in batches:
                result.batch_count += 1
                result.total_rows += len(batch)
                record_rows_processed(source_type.value, len(batch))

                in_flight = len(batch)
                outcome = await self.publisher.publish(self.topic, batch)
                in_flight = 0
                self._tally(result, len(batch), outcome)
        except asyncio.CancelledError:
            self._record_cancelled(result, in_flight, records)
            raise
        finally:
            if held:
                await self.connection.release()

        level = logging.WARNING if result.failed_batches else logging.INFO
        if result.total_rows == 0:
            message = "Report document contained no records"
        else:
            message = "Report ingested"
        log_with_context(
            logger,
            level,
            message,
            url=url,
            topic=self.topic,
            records_total=result.total_rows,
            records_published=result.published_rows,
            records_dead_lettered=result.dead_lettered_rows,
            records_fallback=result.fallback_rows,
            records_lost=result.lost_rows,
            batch_count=result.batch_count,
            failed_batches=result.failed_batches,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
            report_type=source_type.value,
        )
        return result
