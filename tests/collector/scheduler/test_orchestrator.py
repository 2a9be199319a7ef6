"""
Tests for JobOrchestrator.

Test Coverage:
    - One concurrent task per report type, bounded by max_concurrent
    - Task isolation: a hang, timeout or crash affects only its own type
    - Cycle tallies, status metric and health summary
    - Cron scheduling setup and graceful shutdown
"""

import asyncio
from datetime import date, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from prometheus_client import REGISTRY

from collector.common.types import IngestResult, JobOutcome, SourceType
from collector.scheduler.orchestrator import CYCLE_JOB_ID, JobOrchestrator
from collector.scheduler.retry import NOT_YET_AVAILABLE, TIMEOUT, UNEXPECTED_ERROR
from config.config import build_config
from core.errors.exceptions import HttpNotFoundError, HttpServerError

BASE = "https://example.test/reports/"
REPORT_DATE = date(2026, 4, 1)


def make_config(**scheduler):
    scheduler.setdefault("run_on_start", False)
    return build_config(
        {
            "reports": {"base_url": BASE},
            "scheduler": scheduler,
        }
    )


def job_runs(status: str) -> float:
    return REGISTRY.get_sample_value("collector_job_runs_total", {"status": status}) or 0.0


class FakeIngestor:
    """Ingestor whose behavior is chosen per report type."""

    def __init__(self, behaviors=None, delay: float = 0.0):
        self.behaviors = behaviors or {}
        self.delay = delay
        self.calls: list[tuple[SourceType, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def ingest(self, source_type, url):
        self.calls.append((source_type, url))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            behavior = self.behaviors.get(source_type)
            if behavior is not None:
                return await behavior()
            return IngestResult(source_type=source_type, url=url, total_rows=1, published_rows=1)
        finally:
            self.in_flight -= 1


async def hang():
    await asyncio.Event().wait()


@pytest.fixture
def make_orchestrator(record_sleep):
    def _make(ingestor, health=None, **scheduler):
        return JobOrchestrator(
            make_config(**scheduler),
            ingestor,
            health=health,
            sleep=record_sleep,
            clock=lambda: datetime(2026, 4, 1, 0, 0),
        )

    return _make


class TestRunCycle:

    async def test_all_types_succeed(self, make_orchestrator):
        ingestor = FakeIngestor()
        before = job_runs("success")

        result = await make_orchestrator(ingestor).run_cycle(REPORT_DATE)

        assert result.succeeded == 3
        assert result.failed == 0
        assert result.total == 3
        assert result.cycle_id
        assert sorted(url for _, url in ingestor.calls) == [
            f"{BASE}260401_rpts_hail.csv",
            f"{BASE}260401_rpts_torn.csv",
            f"{BASE}260401_rpts_wind.csv",
        ]
        assert job_runs("success") == before + 1

    async def test_defaults_to_clock_date(self, make_orchestrator):
        ingestor = FakeIngestor()

        await make_orchestrator(ingestor).run_cycle()

        assert all("260401_rpts_" in url for _, url in ingestor.calls)

    async def test_tasks_run_concurrently(self, make_orchestrator):
        ingestor = FakeIngestor(delay=0.05)

        await make_orchestrator(ingestor).run_cycle(REPORT_DATE)

        assert ingestor.max_in_flight == 3

    async def test_concurrency_bounded(self, make_orchestrator):
        ingestor = FakeIngestor(delay=0.02)

        result = await make_orchestrator(ingestor, max_concurrent=1).run_cycle(REPORT_DATE)

        assert ingestor.max_in_flight == 1
        assert result.succeeded == 3

    async def test_mixed_outcomes(self, make_orchestrator, record_sleep):
        async def not_found():
            raise HttpNotFoundError(404, url="u")

        async def always_503():
            raise HttpServerError(503, url="u")

        ingestor = FakeIngestor(
            {SourceType.HAIL: not_found, SourceType.WIND: always_503}
        )
        before = job_runs("partial")

        result = await make_orchestrator(ingestor).run_cycle(REPORT_DATE)

        assert result.outcome_for(SourceType.TORNADO).outcome == JobOutcome.SUCCESS
        assert result.outcome_for(SourceType.HAIL).reason == NOT_YET_AVAILABLE
        assert result.outcome_for(SourceType.WIND).outcome == JobOutcome.FAILED
        assert (result.succeeded, result.failed, result.skipped) == (1, 1, 1)
        assert record_sleep.delays == [1800.0, 3600.0, 7200.0]
        assert job_runs("partial") == before + 1

    async def test_all_failed_status(self, make_orchestrator):
        async def boom():
            raise RuntimeError("parser blew up")

        ingestor = FakeIngestor({t: boom for t in SourceType})
        before = job_runs("failed")

        result = await make_orchestrator(ingestor).run_cycle(REPORT_DATE)

        assert result.failed == 3
        assert all(a.reason == UNEXPECTED_ERROR for a in result.attempts)
        assert job_runs("failed") == before + 1

    async def test_reports_cycle_to_health(self, make_orchestrator):
        health = MagicMock()

        result = await make_orchestrator(FakeIngestor(), health=health).run_cycle(REPORT_DATE)

        health.record_cycle.assert_called_once_with(result)


class TestTaskIsolation:

    async def test_hung_task_times_out_alone(self, make_orchestrator):
        ingestor = FakeIngestor({SourceType.HAIL: hang})
        orchestrator = make_orchestrator(ingestor, task_timeout_seconds=0.1)

        result = await orchestrator.run_cycle(REPORT_DATE)

        hail = result.outcome_for(SourceType.HAIL)
        assert hail.outcome == JobOutcome.FAILED
        assert hail.reason == TIMEOUT
        assert hail.attempt_number == 1
        assert result.succeeded == 2

    async def test_timeout_counts_attempts_before_it(self, make_orchestrator):
        async def fail_then_hang():
            if len([c for c in ingestor.calls if c[0] == SourceType.WIND]) == 1:
                raise HttpServerError(502, url="u")
            await hang()

        ingestor = FakeIngestor({SourceType.WIND: fail_then_hang})
        result = await make_orchestrator(ingestor, task_timeout_seconds=0.1).run_cycle(
            REPORT_DATE
        )

        wind = [a for a in result.attempts if a.source_type == SourceType.WIND]
        assert [a.outcome for a in wind] == [JobOutcome.RETRY_SCHEDULED, JobOutcome.FAILED]
        assert wind[-1].attempt_number == 2
        assert wind[-1].reason == TIMEOUT

    async def test_crashed_task_does_not_raise(self, make_orchestrator):
        orchestrator = make_orchestrator(FakeIngestor())

        def flaky_url(base_url, source_type, report_date, template):
            if source_type == SourceType.TORNADO:
                raise RuntimeError("bad template")
            return f"{base_url}{source_type.value}.csv"

        with patch("collector.scheduler.orchestrator.build_report_url", side_effect=flaky_url):
            result = await orchestrator.run_cycle(REPORT_DATE)

        tornado = result.outcome_for(SourceType.TORNADO)
        assert tornado.outcome == JobOutcome.FAILED
        assert tornado.reason == UNEXPECTED_ERROR
        assert result.succeeded == 2


class TestScheduling:

    async def test_start_registers_cron_job(self, make_orchestrator):
        with patch("collector.scheduler.orchestrator.AsyncIOScheduler") as scheduler_cls:
            orchestrator = make_orchestrator(FakeIngestor(), cron="30 1 * * *")
            orchestrator.start()

        scheduler = scheduler_cls.return_value
        scheduler_cls.assert_called_once_with(timezone="UTC")
        kwargs = scheduler.add_job.call_args.kwargs
        assert kwargs["id"] == CYCLE_JOB_ID
        assert kwargs["max_instances"] == 1
        assert kwargs["coalesce"] is True
        assert str(kwargs["trigger"].fields[5]) == "1"
        assert str(kwargs["trigger"].fields[6]) == "30"
        scheduler.start.assert_called_once()
        assert not orchestrator.cycle_in_progress

    async def test_run_on_start_launches_cycle(self, make_orchestrator):
        ingestor = FakeIngestor()
        orchestrator = make_orchestrator(ingestor, run_on_start=True)

        orchestrator.start()
        try:
            assert orchestrator.cycle_in_progress
            result = await orchestrator.wait_for_cycle()
        finally:
            await orchestrator.shutdown()

        assert result.succeeded == 3

    async def test_real_scheduler_starts_and_stops(self, make_orchestrator):
        orchestrator = make_orchestrator(FakeIngestor())

        orchestrator.start()
        assert orchestrator.is_running

        assert await orchestrator.shutdown() is False
        assert not orchestrator.is_running

    async def test_shutdown_stops_scheduler_once(self, make_orchestrator):
        with patch("collector.scheduler.orchestrator.AsyncIOScheduler") as scheduler_cls:
            orchestrator = make_orchestrator(FakeIngestor())
            orchestrator.start()
        scheduler = scheduler_cls.return_value
        scheduler.running = True

        await orchestrator.shutdown()
        await orchestrator.shutdown()

        scheduler.shutdown.assert_called_once_with(wait=False)
        assert not orchestrator.is_running

    async def test_scheduled_run_skipped_while_cycle_in_progress(self, make_orchestrator):
        ingestor = FakeIngestor({t: hang for t in SourceType})
        orchestrator = make_orchestrator(ingestor)

        first = asyncio.create_task(orchestrator._scheduled_cycle())
        await asyncio.sleep(0.01)
        await orchestrator._scheduled_cycle()

        assert len(ingestor.calls) == 3
        assert await orchestrator.shutdown(timeout=0.01) is True
        await asyncio.gather(first, return_exceptions=True)

    async def test_wait_for_cycle_without_cycle(self, make_orchestrator):
        assert await make_orchestrator(FakeIngestor()).wait_for_cycle() is None


class TestShutdown:

    async def test_drains_in_flight_cycle(self, make_orchestrator):
        orchestrator = make_orchestrator(FakeIngestor(delay=0.05), run_on_start=True)
        orchestrator.start()

        forced = await orchestrator.shutdown(timeout=5)

        assert forced is False
        assert orchestrator._cycle_task.done()
        assert not orchestrator._cycle_task.cancelled()

    async def test_cancels_cycle_after_timeout(self, make_orchestrator):
        ingestor = FakeIngestor({t: hang for t in SourceType})
        orchestrator = make_orchestrator(ingestor, run_on_start=True)
        orchestrator.start()
        await asyncio.sleep(0.01)

        forced = await orchestrator.shutdown(timeout=0.05)

        assert forced is True
        assert orchestrator._cycle_task.cancelled()

    async def test_nothing_to_drain(self, make_orchestrator):
        assert await make_orchestrator(FakeIngestor()).shutdown() is False
