"""
Tests for DeadLetterManager routing.

Test Coverage:
    - Envelope construction (shared batch id, metadata, optional trace)
    - Dead-letter topic delivery keyed by batch id
    - Fallback file when the dead-letter topic fails
    - Records counted lost when the fallback fails too
    - Disabled and empty inputs
"""

import json
import logging
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from prometheus_client import REGISTRY

from collector.common.dlq.manager import DeadLetterDestination, DeadLetterManager
from collector.common.types import Batch, Record, SourceType
from config.config import DeadLetterSettings
from core.errors.exceptions import BrokerConnectionError, FallbackWriteError

NOW = datetime(2026, 4, 2, 0, 5, 12, 431000, tzinfo=UTC)
PRIMARY = "raw-weather-reports"
SOURCE_URL = "https://example.test/260401_rpts_torn.csv"


def make_batch(size: int = 3) -> Batch:
    records = tuple(
        Record.from_row({"Time": f"12{i:02d}", "County": "Graves"}, SourceType.TORNADO)
        for i in range(size)
    )
    return Batch(SourceType.TORNADO, records, source_url=SOURCE_URL, sequence=2)


def sample(name: str, **labels) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def raise_error() -> Exception:
    try:
        raise ConnectionError("broker down")
    except ConnectionError as e:
        return e


@pytest.fixture
def producer():
    producer = MagicMock()
    producer.send_batch = AsyncMock(return_value=[])
    return producer


@pytest.fixture
def connection(producer):
    connection = MagicMock()
    connection.acquire = AsyncMock(return_value=producer)
    connection.release = AsyncMock()
    return connection


@pytest.fixture
def make_manager(connection, tmp_path):
    def _make(**settings) -> DeadLetterManager:
        settings.setdefault("fallback_directory", str(tmp_path / "fallback"))
        return DeadLetterManager(
            DeadLetterSettings(**settings), connection, PRIMARY, clock=lambda: NOW
        )

    return _make


class TestBuildEnvelopes:

    def test_one_envelope_per_record(self, make_manager):
        batch = make_batch(3)

        envelopes = make_manager().build_envelopes(batch, raise_error(), 4, "batch-1")

        assert [e.original_record for e in envelopes] == batch.messages()
        assert {e.metadata.batch_id for e in envelopes} == {"batch-1"}
        metadata = envelopes[0].metadata
        assert metadata.timestamp == NOW
        assert metadata.original_destination == PRIMARY
        assert metadata.error_message == "broker down"
        assert metadata.attempt_number == 4
        assert metadata.source_url == SOURCE_URL
        assert metadata.source_type == SourceType.TORNADO

    def test_no_trace_by_default(self, make_manager):
        envelopes = make_manager().build_envelopes(make_batch(1), raise_error(), 1, "b")
        assert envelopes[0].metadata.error_trace is None

    def test_trace_when_enabled(self, make_manager):
        manager = make_manager(include_stack_traces=True)

        envelopes = manager.build_envelopes(make_batch(1), raise_error(), 1, "b")

        assert "ConnectionError: broker down" in envelopes[0].metadata.error_trace

    def test_empty_error_message_uses_type_name(self, make_manager):
        envelopes = make_manager().build_envelopes(make_batch(1), TimeoutError(), 1, "b")
        assert envelopes[0].metadata.error_message == "TimeoutError"


class TestRouteToTopic:

    async def test_publishes_to_dead_letter_topic(self, make_manager, producer, connection):
        before = sample("collector_rows_dead_lettered_total", report_type="torn")

        result = await make_manager().route(make_batch(3), raise_error(), 4)

        assert result.destination == DeadLetterDestination.TOPIC
        assert result.count == 3
        topic, messages = producer.send_batch.await_args.args
        assert topic == "raw-weather-reports-dlq"
        assert len(messages) == 3
        assert {key for key, _ in messages} == {result.batch_id}
        assert all(env.metadata.batch_id == result.batch_id for _, env in messages)
        connection.release.assert_awaited_once()
        assert sample("collector_rows_dead_lettered_total", report_type="torn") == before + 3

    async def test_each_batch_gets_new_id(self, make_manager):
        manager = make_manager()
        first = await manager.route(make_batch(1), raise_error(), 4)
        second = await manager.route(make_batch(1), raise_error(), 4)
        assert first.batch_id != second.batch_id

    async def test_dead_letter_returns_durable_count(self, make_manager):
        assert await make_manager().dead_letter(make_batch(2), raise_error(), 4) == 2


class TestRouteToFallback:

    async def test_topic_failure_writes_file(self, make_manager, producer, tmp_path):
        producer.send_batch.side_effect = ConnectionError("dlq topic down")
        before = sample("collector_fallback_records_total", report_type="torn")

        result = await make_manager().route(make_batch(2), raise_error(), 4)

        assert result.destination == DeadLetterDestination.FILE
        assert result.count == 2
        assert result.file_path.parent == tmp_path / "fallback"
        data = json.loads(result.file_path.read_text())
        assert data["fileMetadata"]["count"] == 2
        assert "dlq topic down" in data["fileMetadata"]["reason"]
        assert {e["metadata"]["batchId"] for e in data["failedEnvelopes"]} == {result.batch_id}
        assert sample("collector_fallback_records_total", report_type="torn") == before + 2

    async def test_broker_unreachable_writes_file(self, make_manager, connection):
        connection.acquire.side_effect = BrokerConnectionError("no brokers")

        result = await make_manager().route(make_batch(1), raise_error(), 4)

        assert result.destination == DeadLetterDestination.FILE
        connection.release.assert_not_awaited()

    async def test_fallback_failure_logs_critical(self, make_manager, producer, caplog):
        producer.send_batch.side_effect = ConnectionError("dlq topic down")
        before = sample("collector_records_lost_total", report_type="torn")

        with patch(
            "collector.common.dlq.manager.write_fallback_file",
            AsyncMock(side_effect=FallbackWriteError("disk full", path="/x")),
        ):
            with caplog.at_level(logging.CRITICAL, logger="collector.common.dlq.manager"):
                result = await make_manager().route(make_batch(3), raise_error(), 4)

        assert result.destination == DeadLetterDestination.LOST
        assert result.count == 3
        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(critical) == 1
        assert critical[0].records_lost == 3
        assert sample("collector_records_lost_total", report_type="torn") == before + 3

    async def test_lost_records_not_counted_durable(self, make_manager, producer):
        producer.send_batch.side_effect = ConnectionError("down")
        with patch(
            "collector.common.dlq.manager.write_fallback_file",
            AsyncMock(side_effect=FallbackWriteError("disk full")),
        ):
            assert await make_manager().dead_letter(make_batch(2), raise_error(), 4) == 0


class TestRouteSkipped:

    async def test_disabled(self, make_manager, connection):
        result = await make_manager(enabled=False).route(make_batch(2), raise_error(), 4)

        assert result.destination == DeadLetterDestination.DISABLED
        assert result.count == 0
        connection.acquire.assert_not_awaited()

    async def test_empty_batch(self, make_manager, connection):
        result = await make_manager().route(Batch(SourceType.HAIL, ()), raise_error(), 4)

        assert result.destination == DeadLetterDestination.EMPTY
        connection.acquire.assert_not_awaited()
