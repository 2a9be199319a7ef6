"""Storm report collector process. Use --help for usage."""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from collector.common.connection import BrokerConnectionManager
from collector.common.dlq.manager import DeadLetterManager
from collector.common.health import HealthCheckServer
from collector.common.producer import MessageProducer
from collector.common.publisher import BatchPublisher
from collector.common.signals import (
    remove_shutdown_signal_handlers,
    setup_shutdown_signal_handlers,
)
from collector.reports.fetcher import ReportFetcher
from collector.reports.ingest import ReportIngestor
from collector.scheduler.orchestrator import JobOrchestrator
from config.config import CollectorConfig, load_config
from core.errors.exceptions import BrokerConnectionError
from core.logging.setup import log_collector_startup, setup_logging
from core.logging.utilities import log_exception
from core.utils import generate_worker_id

# __main__.py is at src/collector/__main__.py, so root is 3 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Collect daily storm reports and publish them to Kafka",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run on the configured cron schedule
    python -m collector

    # Run a single cycle and exit (non-zero exit code if any report failed)
    python -m collector --once

    # Container deployment: logs to stdout, custom health port
    python -m collector --log-to-stdout --health-port 9090
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: src/config/config.yaml)",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one collection cycle and exit instead of scheduling",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Console logging level (default: from config, INFO)",
    )

    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: from config or LOG_DIR env var)",
    )

    parser.add_argument(
        "--log-to-stdout",
        action="store_true",
        help="Send all log output to stdout only, skipping file handlers. "
        "Can also be set via LOG_TO_STDOUT environment variable.",
    )

    parser.add_argument(
        "--health-port",
        type=int,
        default=None,
        help="Port for health and metrics endpoints (default: from config, 8080)",
    )

    parser.add_argument(
        "--no-health",
        action="store_true",
        help="Do not start the health/metrics server",
    )

    return parser.parse_args(argv)


def _cli_overrides(args: argparse.Namespace) -> dict:
    observability: dict = {}
    if args.log_level:
        observability["log_level"] = args.log_level
    if args.log_dir:
        observability["log_dir"] = args.log_dir
    if args.log_to_stdout:
        observability["log_to_stdout"] = True
    if args.health_port is not None:
        observability["health_port"] = args.health_port
    if args.no_health:
        observability["health_enabled"] = False
    return {"observability": observability} if observability else {}


def _setup_logging(config: CollectorConfig, worker_id: str) -> None:
    obs = config.observability
    setup_logging(
        name="collector",
        log_dir=Path(obs.log_dir),
        json_format=obs.json_logs,
        console_level=getattr(logging, obs.log_level, logging.INFO),
        worker_id=worker_id,
        log_to_stdout=obs.log_to_stdout,
    )


def _display_startup_info(config: CollectorConfig, worker_id: str, once: bool) -> None:
    print(f"[STARTUP] Worker ID: {worker_id}", flush=True)
    print(
        f"[STARTUP] Log output mode: {'stdout' if config.observability.log_to_stdout else 'file+console'}",
        flush=True,
    )
    log_collector_startup(
        logger,
        name="storm report collector",
        bootstrap_servers=config.kafka.bootstrap_servers,
        topic=config.kafka.topic,
        dlq_topic=config.dead_letter.topic if config.dead_letter.enabled else None,
        report_types=config.reports.types,
        cron=None if once else config.scheduler.cron,
        extra_config={
            "Reports base URL": config.reports.base_url,
            "Batch size": config.reports.batch_size,
            "Max concurrent reports": config.scheduler.max_concurrent,
            "Fetch retry delays (s)": config.scheduler.fetch_retry.delay_schedule(),
            "Task timeout (s)": config.scheduler.task_timeout_seconds or "none",
            "Fallback directory": config.dead_letter.fallback_directory,
        },
    )


async def run_collector(config: CollectorConfig, worker_id: str, once: bool = False) -> int:
    """Wire the components, run until shutdown, and return the exit code."""
    shutdown_event = asyncio.Event()

    connection = BrokerConnectionManager(
        config.kafka,
        producer_factory=lambda: MessageProducer(
            config.kafka, client_id=f"{config.kafka.client_id}-{worker_id}"
        ),
    )

    # Health server first so probes answer while the broker is still connecting
    health = HealthCheckServer(
        port=config.observability.health_port,
        worker_name=worker_id,
        enabled=config.observability.health_enabled,
        readiness_check=lambda: connection.is_connected,
    )
    await health.start()
    if health.is_enabled:
        print(f"[STARTUP] Health server started on port {health.actual_port}", flush=True)

    dead_letters = DeadLetterManager(config.dead_letter, connection, config.kafka.topic)
    publisher = BatchPublisher(connection, dead_letters, retry=config.publish_retry)
    fetcher = ReportFetcher(timeout_seconds=config.reports.request_timeout_seconds)
    ingestor = ReportIngestor(
        fetcher,
        publisher,
        topic=config.kafka.topic,
        batch_size=config.reports.batch_size,
        connection=connection,
    )
    orchestrator = JobOrchestrator(config, ingestor, health=health)

    warm = False
    handlers_installed = False
    try:
        print("[STARTUP] Connecting to Kafka...", flush=True)
        try:
            await connection.acquire()
            warm = True
        except BrokerConnectionError as e:
            # Batches still connect on demand and dead-letter on failure
            log_exception(
                logger,
                e,
                "Broker not reachable at startup, continuing",
                level=logging.WARNING,
                include_traceback=False,
                bootstrap_servers=config.kafka.bootstrap_servers,
            )

        if once:
            result = await orchestrator.run_cycle()
            return EXIT_FAILURE if result.failed else EXIT_OK

        setup_shutdown_signal_handlers(shutdown_event.set)
        handlers_installed = True

        orchestrator.start()
        await shutdown_event.wait()

        logger.info("Shutdown signal received, stopping collector")
        forced = await orchestrator.shutdown()
        if forced:
            logger.warning("Shutdown was forced, in-flight work was cancelled")
            return EXIT_FAILURE
        return EXIT_OK

    finally:
        if handlers_installed:
            remove_shutdown_signal_handlers()
        print("[SHUTDOWN] Closing connections...", flush=True)
        await fetcher.close()
        if warm:
            await connection.release()
        await connection.close()
        await health.stop()
        logger.info("Collector shutdown complete")


def main(argv: list[str] | None = None) -> int:
    global logger

    load_dotenv(PROJECT_ROOT / ".env")
    args = parse_args(argv)

    try:
        config = load_config(args.config, overrides=_cli_overrides(args))
    except (FileNotFoundError, ValueError) as e:
        print(f"[STARTUP] Configuration error: {e}", file=sys.stderr, flush=True)
        return EXIT_CONFIG_ERROR

    worker_id = os.getenv("WORKER_ID") or generate_worker_id("collector")
    _setup_logging(config, worker_id)
    logger = logging.getLogger(__name__)

    _display_startup_info(config, worker_id, args.once)

    try:
        return asyncio.run(run_collector(config, worker_id, once=args.once))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
