"""
Tests for ReportIngestor.

Fetcher and publisher are mocked; the real parser runs. The end-to-end
classes also run the real BatchPublisher and DeadLetterManager.
"""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import REGISTRY

from collector.common.dlq.manager import (
    DeadLetterDestination,
    DeadLetterManager,
    DeadLetterResult,
)
from collector.common.publisher import BatchPublisher
from collector.common.types import JobOutcome, PublishResult, SourceType
from collector.reports.ingest import ReportIngestor
from collector.scheduler.orchestrator import JobOrchestrator
from collector.scheduler.retry import TIMEOUT
from config.config import DeadLetterSettings, build_config
from core.errors.exceptions import BrokerConnectionError, HttpServerError

TOPIC = "raw-weather-reports"
URL = "https://example.test/260401_rpts_wind.csv"


def csv_with_rows(count: int) -> str:
    lines = ["Time,Speed,Location"]
    lines.extend(f"12{i:02d},{50 + i},Somewhere" for i in range(count))
    return "\n".join(lines) + "\n"


def delivered(batch_len: int) -> PublishResult:
    return PublishResult(delivered=True, count=batch_len)


def failed(destination: DeadLetterDestination | None) -> PublishResult:
    routed = DeadLetterResult(destination, 0) if destination else None
    return PublishResult(delivered=False, count=0, attempts=4, dead_letter=routed)


@pytest.fixture
def fetcher():
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(return_value=csv_with_rows(5))
    return fetcher


@pytest.fixture
def publisher():
    publisher = MagicMock()

    async def publish(topic, batch):
        return delivered(len(batch))

    publisher.publish = AsyncMock(side_effect=publish)
    return publisher


@pytest.fixture
def connection():
    connection = MagicMock()
    connection.acquire = AsyncMock()
    connection.release = AsyncMock()
    return connection


class TestIngestSuccess:

    async def test_publishes_all_rows_in_batches(self, fetcher, publisher):
        ingestor = ReportIngestor(fetcher, publisher, TOPIC, batch_size=2)

        result = await ingestor.ingest(SourceType.WIND, URL)

        fetcher.fetch.assert_awaited_once_with(URL, report_type="wind")
        sizes = [len(call.args[1]) for call in publisher.publish.await_args_list]
        assert sizes == [2, 2, 1]
        assert all(call.args[0] == TOPIC for call in publisher.publish.await_args_list)
        assert result.total_rows == 5
        assert result.published_rows == 5
        assert result.batch_count == 3
        assert result.failed_batches == 0
        assert result.accounted_rows == result.total_rows

    async def test_batches_carry_source_url(self, fetcher, publisher):
        await ReportIngestor(fetcher, publisher, TOPIC).ingest(SourceType.WIND, URL)

        batch = publisher.publish.await_args.args[1]
        assert batch.source_url == URL
        assert batch.source_type == SourceType.WIND

    async def test_counts_processed_rows(self, fetcher, publisher):
        labels = {"report_type": "wind"}
        before = REGISTRY.get_sample_value("collector_rows_processed_total", labels) or 0

        await ReportIngestor(fetcher, publisher, TOPIC).ingest(SourceType.WIND, URL)

        assert REGISTRY.get_sample_value("collector_rows_processed_total", labels) == before + 5

    async def test_header_only_document(self, fetcher, publisher, caplog):
        fetcher.fetch.return_value = "Time,Speed,Location\n"

        with caplog.at_level(logging.INFO, logger="collector.reports.ingest"):
            result = await ReportIngestor(fetcher, publisher, TOPIC).ingest(SourceType.WIND, URL)

        assert result.total_rows == 0
        assert result.batch_count == 0
        publisher.publish.assert_not_awaited()
        assert any("no records" in r.getMessage() for r in caplog.records)


class TestIngestPublishFailures:

    @pytest.mark.parametrize(
        "destination,field",
        [
            (DeadLetterDestination.TOPIC, "dead_lettered_rows"),
            (DeadLetterDestination.FILE, "fallback_rows"),
            (DeadLetterDestination.LOST, "lost_rows"),
            (DeadLetterDestination.DISABLED, "lost_rows"),
            (None, "lost_rows"),
        ],
    )
    async def test_failed_batch_tallied_by_destination(self, fetcher, publisher, destination, field):
        publisher.publish.side_effect = [delivered(2), failed(destination), delivered(1)]
        ingestor = ReportIngestor(fetcher, publisher, TOPIC, batch_size=2)

        result = await ingestor.ingest(SourceType.WIND, URL)

        assert result.published_rows == 3
        assert getattr(result, field) == 2
        assert result.failed_batches == 1
        assert result.accounted_rows == 5

    async def test_failure_does_not_stop_later_batches(self, fetcher, publisher):
        publisher.publish.side_effect = [
            failed(DeadLetterDestination.TOPIC),
            failed(DeadLetterDestination.TOPIC),
            delivered(1),
        ]

        result = await ReportIngestor(fetcher, publisher, TOPIC, batch_size=2).ingest(
            SourceType.WIND, URL
        )

        assert publisher.publish.await_count == 3
        assert result.failed_batches == 2

    async def test_failed_batches_logged_as_warning(self, fetcher, publisher, caplog):
        publisher.publish.side_effect = [failed(DeadLetterDestination.TOPIC)]
        ingestor = ReportIngestor(fetcher, publisher, TOPIC, batch_size=10)

        with caplog.at_level(logging.INFO, logger="collector.reports.ingest"):
            await ingestor.ingest(SourceType.WIND, URL)

        summary = [r for r in caplog.records if r.getMessage() == "Report ingested"]
        assert summary[0].levelno == logging.WARNING
        assert summary[0].failed_batches == 1


class TestIngestFetchErrors:

    async def test_fetch_error_propagates(self, fetcher, publisher, connection):
        fetcher.fetch.side_effect = HttpServerError(503, url=URL)
        ingestor = ReportIngestor(fetcher, publisher, TOPIC, connection=connection)

        with pytest.raises(HttpServerError):
            await ingestor.ingest(SourceType.WIND, URL)

        publisher.publish.assert_not_awaited()
        connection.acquire.assert_not_awaited()


class TestIngestConnectionHold:

    async def test_holds_one_reference_for_all_batches(self, fetcher, publisher, connection):
        ingestor = ReportIngestor(fetcher, publisher, TOPIC, batch_size=2, connection=connection)

        await ingestor.ingest(SourceType.WIND, URL)

        connection.acquire.assert_awaited_once()
        connection.release.assert_awaited_once()

    async def test_released_when_publish_raises(self, fetcher, publisher, connection):
        publisher.publish.side_effect = RuntimeError("unexpected")
        ingestor = ReportIngestor(fetcher, publisher, TOPIC, connection=connection)

        with pytest.raises(RuntimeError):
            await ingestor.ingest(SourceType.WIND, URL)

        connection.release.assert_awaited_once()

    async def test_unavailable_broker_still_publishes_per_batch(
        self, fetcher, publisher, connection
    ):
        connection.acquire.side_effect = BrokerConnectionError("no brokers")
        ingestor = ReportIngestor(fetcher, publisher, TOPIC, connection=connection)

        result = await ingestor.ingest(SourceType.WIND, URL)

        assert result.published_rows == 5
        connection.release.assert_not_awaited()


class TestIngestorInit:

    def test_rejects_invalid_batch_size(self, fetcher, publisher):
        with pytest.raises(ValueError, match="batch_size"):
            ReportIngestor(fetcher, publisher, TOPIC, batch_size=0)


class TestIngestCancelled:

    @pytest.fixture
    def sending(self):
        return asyncio.Event()

    @pytest.fixture
    def stuck_connection(self, connection, sending):
        async def hang(topic, messages):
            sending.set()
            await asyncio.Event().wait()

        producer = MagicMock()
        producer.send_batch = AsyncMock(side_effect=hang)
        connection.acquire.return_value = producer
        return connection

    def make_ingestor(self, fetcher, connection):
        publisher = BatchPublisher(connection, MagicMock())
        return ReportIngestor(fetcher, publisher, TOPIC, batch_size=2, connection=connection)

    async def test_in_flight_and_undecoded_rows_counted_lost(
        self, fetcher, stuck_connection, sending, caplog
    ):
        fetcher.fetch.return_value = csv_with_rows(4)
        ingestor = self.make_ingestor(fetcher, stuck_connection)
        labels = {"report_type": "wind"}
        before = REGISTRY.get_sample_value("collector_records_lost_total", labels) or 0

        with caplog.at_level(logging.CRITICAL, logger="collector.reports.ingest"):
            task = asyncio.create_task(ingestor.ingest(SourceType.WIND, URL))
            await sending.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert REGISTRY.get_sample_value("collector_records_lost_total", labels) == before + 4
        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(critical) == 1
        assert critical[0].records_lost == 4
        assert critical[0].records_total == 4
        assert critical[0].records_published == 0
        # once for the attempt, once for the reference held across batches
        assert stuck_connection.release.await_count == 2

    async def test_task_timeout_loses_rows_with_record(
        self, fetcher, stuck_connection, caplog
    ):
        fetcher.fetch.return_value = csv_with_rows(4)
        ingestor = self.make_ingestor(fetcher, stuck_connection)
        config = build_config(
            {
                "reports": {"types": ["wind"]},
                "scheduler": {"run_on_start": False, "task_timeout_seconds": 0.2},
            }
        )
        labels = {"report_type": "wind"}
        before = REGISTRY.get_sample_value("collector_records_lost_total", labels) or 0

        with caplog.at_level(logging.CRITICAL, logger="collector.reports.ingest"):
            result = await JobOrchestrator(config, ingestor).run_cycle()

        attempt = result.outcome_for(SourceType.WIND)
        assert attempt.outcome == JobOutcome.FAILED
        assert attempt.reason == TIMEOUT
        assert REGISTRY.get_sample_value("collector_records_lost_total", labels) == before + 4
        assert [r.records_lost for r in caplog.records if r.levelno == logging.CRITICAL] == [4]


class TestIngestFallbackEndToEnd:

    async def test_each_failed_batch_written_to_own_file(
        self, fetcher, connection, tmp_path, record_sleep
    ):
        producer = MagicMock()
        producer.send_batch = AsyncMock(side_effect=ConnectionError("broker down"))
        connection.acquire.return_value = producer
        dead_letters = DeadLetterManager(
            DeadLetterSettings(fallback_directory=str(tmp_path)), connection, TOPIC
        )
        publisher = BatchPublisher(connection, dead_letters, sleep=record_sleep)
        ingestor = ReportIngestor(fetcher, publisher, TOPIC, batch_size=2)
        fetcher.fetch.return_value = csv_with_rows(3)

        result = await ingestor.ingest(SourceType.WIND, URL)

        assert result.batch_count == 2
        assert result.failed_batches == 2
        assert result.fallback_rows == 3
        assert result.accounted_rows == 3
        # four primary attempts plus one dead-letter attempt per batch
        assert producer.send_batch.await_count == 10
        assert record_sleep.delays == [1.0, 2.0, 4.0] * 2

        files = sorted(tmp_path.glob("dlq-fallback-*.json"))
        assert len(files) == 2
        documents = [json.loads(path.read_text()) for path in files]
        assert sorted(doc["fileMetadata"]["count"] for doc in documents) == [1, 2]

        batch_ids = set()
        for doc in documents:
            ids = {e["metadata"]["batchId"] for e in doc["failedEnvelopes"]}
            assert len(ids) == 1
            batch_ids |= ids
            for envelope in doc["failedEnvelopes"]:
                assert envelope["metadata"]["originalDestination"] == TOPIC
                assert envelope["metadata"]["attemptNumber"] == 4
                assert envelope["metadata"]["sourceUrl"] == URL
        assert len(batch_ids) == 2

        speeds = sorted(
            e["originalRecord"]["Speed"] for doc in documents for e in doc["failedEnvelopes"]
        )
        assert speeds == ["50", "51", "52"]
