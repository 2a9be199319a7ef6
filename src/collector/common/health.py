"""
Health check and metrics endpoints for the collector.

Provides Kubernetes-compatible endpoints:
- /health/live - Liveness probe (is the process running?)
- /health/ready - Readiness probe (is the broker connection up?)
- /metrics - Prometheus text exposition of the default registry

Usage:
    from collector.common.health import HealthCheckServer

    health = HealthCheckServer(
        port=8080,
        worker_name="storm-report-collector",
        readiness_check=lambda: connection.is_connected,
    )
    await health.start()
    ...
    await health.stop()
"""

import asyncio
import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from collector.common.types import CycleResult

logger = logging.getLogger(__name__)


class HealthCheckServer:
    """
    HTTP server for health probes and metrics scraping.

    The server runs its own event loop in a daemon thread so probes keep
    answering while the collector's loop is busy fetching or publishing.

    Readiness:
        Returns 200 only if the broker connection is established, 503
        otherwise. Connection state comes from ``readiness_check`` when
        given, else from ``set_ready()``.
    """

    def __init__(
        self,
        port: int | None = 8080,
        worker_name: str = "collector",
        enabled: bool = True,
        readiness_check: Callable[[], bool] | None = None,
    ):
        """
        Args:
            port: HTTP port to listen on. Use 0 for dynamic port assignment,
                  or None to disable the server (default: 8080)
            worker_name: Name reported in responses and logs
            enabled: If False, start() and stop() become no-ops
            readiness_check: Callable returning True while the broker
                connection is up. Called from the server thread.
        """
        self.port = port
        self.worker_name = worker_name
        self._enabled = enabled and port is not None
        self._readiness_check = readiness_check
        self._broker_connected = False
        self._started_at = datetime.now(UTC)
        self._actual_port: int | None = None
        self._last_cycle: dict | None = None

        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

        # Thread management for isolated event loop
        self._thread: threading.Thread | None = None
        self._thread_loop: asyncio.AbstractEventLoop | None = None
        self._thread_ready = threading.Event()
        self._server_started = threading.Event()
        self._shutdown_event = threading.Event()
        self._state_lock = threading.Lock()

    def set_ready(self, broker_connected: bool) -> None:
        """Update broker connection state when no readiness_check is used."""
        with self._state_lock:
            old = self._broker_connected
            self._broker_connected = broker_connected
        if old != broker_connected:
            logger.info(f"Readiness status changed: {old} -> {broker_connected}")

    def record_cycle(self, result: CycleResult) -> None:
        """Expose the most recent cycle summary on the readiness response."""
        with self._state_lock:
            self._last_cycle = {
                "cycle_id": result.cycle_id,
                "succeeded": result.succeeded,
                "failed": result.failed,
                "skipped": result.skipped,
                "duration_seconds": round(result.duration_seconds, 3),
                "finished_at": datetime.now(UTC).isoformat(),
            }

    def _broker_ready(self) -> bool:
        if self._readiness_check is not None:
            try:
                return bool(self._readiness_check())
            except Exception:
                logger.warning("Readiness check raised", exc_info=True)
                return False
        with self._state_lock:
            return self._broker_connected

    @property
    def is_ready(self) -> bool:
        return self._broker_ready()

    async def handle_liveness(self, request: web.Request) -> web.Response:
        """GET /health/live - 200 while the process is running."""
        uptime_seconds = (datetime.now(UTC) - self._started_at).total_seconds()
        return web.json_response(
            {
                "status": "alive",
                "worker": self.worker_name,
                "uptime_seconds": int(uptime_seconds),
                "timestamp": datetime.now(UTC).isoformat(),
            },
            status=200,
        )

    async def handle_readiness(self, request: web.Request) -> web.Response:
        """GET /health/ready - 200 if the broker is connected, 503 otherwise."""
        broker_connected = self._broker_ready()
        with self._state_lock:
            last_cycle = self._last_cycle

        body = {
            "worker": self.worker_name,
            "checks": {"broker_connected": broker_connected},
            "last_cycle": last_cycle,
            "timestamp": datetime.now(UTC).isoformat(),
        }

        if broker_connected:
            body["status"] = "ready"
            return web.json_response(body, status=200)

        body.update({"status": "not_ready", "reasons": ["broker_disconnected"]})
        return web.json_response(body, status=503)

    async def handle_metrics(self, request: web.Request) -> web.Response:
        """GET /metrics - Prometheus exposition format."""
        return web.Response(
            body=generate_latest(REGISTRY),
            headers={"Content-Type": CONTENT_TYPE_LATEST},
        )

    def create_app(self) -> web.Application:
        """Create aiohttp application with health and metrics endpoints."""
        app = web.Application()
        app.router.add_get("/health/live", self.handle_liveness)
        app.router.add_get("/health/ready", self.handle_readiness)
        app.router.add_get("/metrics", self.handle_metrics)
        return app

    def _run_server_thread(self) -> None:
        """Entry point for health server thread."""
        try:
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            self._thread_loop = loop
            self._thread_ready.set()
            loop.run_until_complete(self._start_server_async())
        except Exception as e:
            logger.error(f"Health server thread error: {e}", exc_info=True)
        finally:
            # Unblock start() even if setup failed
            self._server_started.set()
            if self._thread_loop:
                self._thread_loop.close()

    async def _start_server_async(self) -> None:
        """Start aiohttp server in thread's event loop."""
        try:
            if await self._try_start_on_port(self.port):
                logger.info(
                    "Health check server started",
                    extra={"operation": f"http://localhost:{self._actual_port}/health/ready"},
                )
            elif self.port != 0 and await self._try_start_on_port(0):
                logger.warning(
                    f"Port {self.port} in use, falling back to dynamic port {self._actual_port}"
                )
            else:
                logger.warning("Could not start health check server")
                self._server_started.set()
                return

            self._server_started.set()

            while not self._shutdown_event.is_set():
                await asyncio.sleep(0.2)

        finally:
            if self._runner:
                await self._runner.cleanup()

    async def _try_start_on_port(self, port: int) -> bool:
        """Try to start the health server on a specific port.

        Returns:
            True if successful, False if port is in use
        """
        try:
            self._app = self.create_app()
            self._runner = web.AppRunner(self._app)
            await self._runner.setup()
            self._site = web.TCPSite(self._runner, "0.0.0.0", port, reuse_address=True)
            await self._site.start()

            # Actual port matters when port=0
            if self._site._server and self._site._server.sockets:
                self._actual_port = self._site._server.sockets[0].getsockname()[1]
            else:
                self._actual_port = port

            return True
        except OSError as e:
            # Port in use: errno 98 (Linux), 48 (macOS) or 10048 (Windows)
            if e.errno in (98, 48, 10048):
                if self._runner:
                    await self._runner.cleanup()
                    self._runner = None
                    self._site = None
                    self._app = None
                return False
            raise

    async def start(self) -> None:
        """
        Start the HTTP server in a dedicated thread.

        If the configured port is in use, falls back to dynamic port
        assignment. If that fails too, logs a warning and continues without
        health checks.
        """
        if not self._enabled:
            logger.debug("Health check server is disabled, skipping start")
            return

        if self._thread is not None and self._thread.is_alive():
            return

        self._thread = threading.Thread(
            target=self._run_server_thread,
            name=f"health-server-{self.worker_name}",
            daemon=True,
        )
        self._thread.start()

        # Blocking waits run off the main loop so other tasks keep moving
        started = await asyncio.to_thread(self._server_started.wait, 5.0)
        if not started or self._actual_port is None:
            logger.warning("Continuing without health checks: server failed to start listening")
            self._enabled = False

    async def stop(self) -> None:
        """Stop the server thread and release the port."""
        if not self._thread:
            return

        self._shutdown_event.set()
        await asyncio.to_thread(self._thread.join, 5.0)

        if self._thread.is_alive():
            logger.warning("Health server thread did not stop cleanly")
        else:
            logger.info("Health check server stopped")

        self._thread = None
        self._actual_port = None
        self._thread_ready.clear()
        self._server_started.clear()
        self._shutdown_event.clear()

    @property
    def actual_port(self) -> int | None:
        """Port the server is listening on, or None if not running."""
        return self._actual_port

    @property
    def is_enabled(self) -> bool:
        return self._enabled


__all__ = ["HealthCheckServer"]
