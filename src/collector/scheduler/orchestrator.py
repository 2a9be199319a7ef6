"""
Cycle orchestration and cron scheduling.

A cycle launches one task per configured report type. Tasks are bounded
by a semaphore, isolated from each other, and each one runs the fetch
retry state machine around a ReportIngestor. A cycle never raises: every
task ends with a terminal JobAttempt that is tallied into a CycleResult.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import date, datetime
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from collector.common.health import HealthCheckServer
from collector.common.metrics import record_job_run
from collector.common.types import CycleResult, JobAttempt, JobOutcome, SourceType
from collector.reports.ingest import ReportIngestor
from collector.reports.urls import build_report_url
from collector.scheduler.retry import (
    TIMEOUT,
    UNEXPECTED_ERROR,
    run_with_fetch_retry,
)
from config.config import CollectorConfig
from core.logging.context import set_log_context
from core.logging.setup import generate_cycle_id
from core.logging.utilities import format_cycle_output, log_exception, log_with_context

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

CYCLE_JOB_ID = "collector_cycle"


class JobOrchestrator:
    """Runs collection cycles on demand and on a cron schedule.

    Example:
        orchestrator = JobOrchestrator(config, ingestor, health=health)
        orchestrator.start()
        ...
        forced = await orchestrator.shutdown()
    """

    def __init__(
        self,
        config: CollectorConfig,
        ingestor: ReportIngestor,
        health: HealthCheckServer | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.ingestor = ingestor
        self.health = health
        self._sleep = sleep
        tz = ZoneInfo(config.scheduler.timezone)
        self._clock = clock or (lambda: datetime.now(tz))
        self._scheduler: AsyncIOScheduler | None = None
        self._cycle_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_task is not None and not self._cycle_task.done()

    # =========================================================================
    # Cycle execution
    # =========================================================================

    async def run_cycle(self, date: date | datetime | None = None) -> CycleResult:
        """Run one cycle over every configured report type.

        Args:
            date: Report date; defaults to today in the scheduler timezone

        Returns:
            CycleResult with every attempt made, in completion order per type
        """
        cycle_id = generate_cycle_id()
        set_log_context(cycle_id=cycle_id, stage="cycle")
        report_date = date or self._clock()
        source_types = self.config.reports.source_types
        start = time.perf_counter()

        logger.info(
            "Starting collection cycle",
            extra={"total": len(source_types), "operation": report_date.strftime("%Y-%m-%d")},
        )

        semaphore = asyncio.Semaphore(self.config.scheduler.max_concurrent)
        tasks = [
            asyncio.create_task(
                self._run_source(source_type, report_date, semaphore),
                name=f"collect-{source_type.value}",
            )
            for source_type in source_types
        ]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        result = CycleResult(cycle_id=cycle_id)
        for source_type, outcome in zip(source_types, outcomes):
            if isinstance(outcome, BaseException):
                log_exception(
                    logger,
                    outcome,
                    "Unexpected error in report task",
                    report_type=source_type.value,
                )
                result.attempts.append(
                    JobAttempt(source_type, 1, JobOutcome.FAILED, reason=UNEXPECTED_ERROR)
                )
            else:
                result.attempts.extend(outcome)

        result.duration_seconds = time.perf_counter() - start
        record_job_run(self._cycle_status(result), result.duration_seconds)
        logger.info(
            format_cycle_output(
                cycle_id,
                result.succeeded,
                result.failed,
                result.skipped,
                result.duration_seconds,
            ),
            extra={
                "successful": result.succeeded,
                "failed": result.failed,
                "skipped": result.skipped,
                "total": result.total,
                "duration_ms": round(result.duration_seconds * 1000, 2),
            },
        )
        if self.health is not None:
            self.health.record_cycle(result)
        return result

    @staticmethod
    def _cycle_status(result: CycleResult) -> str:
        if result.failed == 0:
            return "success"
        if result.succeeded == 0 and result.skipped == 0:
            return "failed"
        return "partial"

    async def _run_source(
        self,
        source_type: SourceType,
        report_date: date | datetime,
        semaphore: asyncio.Semaphore,
    ) -> list[JobAttempt]:
        # Runs in its own task, so this context does not leak to siblings
        set_log_context(report_type=source_type.value, stage="collect")
        url = build_report_url(
            self.config.reports.base_url,
            source_type,
            report_date,
            self.config.reports.filename_template,
        )
        attempts: list[JobAttempt] = []
        timeout = self.config.scheduler.task_timeout_seconds

        async with semaphore:
            work = run_with_fetch_retry(
                lambda: self.ingestor.ingest(source_type, url),
                source_type,
                retry=self.config.scheduler.fetch_retry,
                sleep=self._sleep,
                url=url,
                attempts=attempts,
            )
            try:
                if timeout is None:
                    await work
                else:
                    await asyncio.wait_for(work, timeout=timeout)
            except TimeoutError:
                attempt_number = len(attempts) + 1
                log_with_context(
                    logger,
                    logging.ERROR,
                    "Report task timed out",
                    url=url,
                    attempt=attempt_number,
                    delay_seconds=timeout,
                    reason=TIMEOUT,
                    report_type=source_type.value,
                )
                attempts.append(
                    JobAttempt(source_type, attempt_number, JobOutcome.FAILED, reason=TIMEOUT)
                )

        return attempts

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def _scheduled_cycle(self) -> None:
        if self.cycle_in_progress:
            logger.warning("Previous cycle still running, skipping scheduled run")
            return
        self._cycle_task = asyncio.create_task(self.run_cycle(), name="collector-cycle")
        await self._cycle_task

    def start(self) -> None:
        """Start cron scheduling; runs the first cycle now when configured to.

        Must be called from inside the running event loop.
        """
        settings = self.config.scheduler
        trigger = CronTrigger.from_crontab(settings.cron, timezone=settings.timezone)

        self._scheduler = AsyncIOScheduler(timezone=settings.timezone)
        job = self._scheduler.add_job(
            self._scheduled_cycle,
            trigger=trigger,
            id=CYCLE_JOB_ID,
            name="Storm report collection",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )
        self._scheduler.start()

        logger.info(
            "Scheduler started",
            extra={"cron": settings.cron, "next_run": str(job.next_run_time)},
        )

        if settings.run_on_start:
            self._cycle_task = asyncio.create_task(self.run_cycle(), name="collector-cycle")

    async def wait_for_cycle(self) -> CycleResult | None:
        """Await the in-flight cycle, if any."""
        if self._cycle_task is None:
            return None
        return await self._cycle_task

    async def shutdown(self, timeout: float | None = None) -> bool:
        """Stop scheduling and drain the in-flight cycle.

        Args:
            timeout: Seconds to wait for the running cycle; defaults to
                ``scheduler.shutdown_timeout_seconds``

        Returns:
            True if the cycle had to be cancelled
        """
        if timeout is None:
            timeout = self.config.scheduler.shutdown_timeout_seconds

        # The asyncio scheduler only clears ``running`` on its next loop turn
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

        task = self._cycle_task
        if task is None or task.done():
            return False

        logger.info(
            "Waiting for in-flight cycle to finish",
            extra={"delay_seconds": timeout},
        )
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if done:
            return False

        logger.warning(
            "In-flight cycle did not finish in time, cancelling",
            extra={"delay_seconds": timeout},
        )
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True
