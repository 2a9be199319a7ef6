"""
Async HTTP retrieval of report documents using aiohttp.

Handles timeouts, connection pooling and error classification. Retries
are not done here; the scheduler's fetch state machine owns backoff.
"""

import logging
import time

import aiohttp

from collector.common.metrics import csv_fetch_duration_seconds
from core.errors.exceptions import (
    EmptyResponseError,
    TransportError,
    http_error_for_status,
)
from core.logging.utilities import log_with_context

logger = logging.getLogger(__name__)


def create_session(
    max_connections: int = 10,
    timeout_total: float = 60.0,
    timeout_connect: float = 15.0,
    timeout_sock_read: float = 30.0,
) -> aiohttp.ClientSession:
    """
    Create aiohttp ClientSession with connection pooling and timeouts.

    Timeout configuration prevents indefinite hangs:
    - timeout_total: Total time for the entire request
    - timeout_connect: Time to acquire a connection
    - timeout_sock_read: Time between reads

    Caller is responsible for closing the session.
    """
    connector = aiohttp.TCPConnector(
        limit=max_connections,
        ttl_dns_cache=300,
    )
    timeout = aiohttp.ClientTimeout(
        total=timeout_total,
        connect=timeout_connect,
        sock_read=timeout_sock_read,
    )
    return aiohttp.ClientSession(
        connector=connector,
        timeout=timeout,
        headers={"User-Agent": "storm-report-collector"},
    )


class ReportFetcher:
    """Fetches one report document per call.

    Raises typed SourceFetchError subclasses so callers never inspect
    status codes themselves:
        - HttpNotFoundError for 404
        - HttpClientError for other 4xx
        - HttpServerError for 5xx
        - EmptyResponseError for 204 or a zero-length 2xx body
        - TransportError for connection, DNS and timeout failures
    """

    def __init__(
        self,
        timeout_seconds: float = 60.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self.timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = create_session(timeout_total=self.timeout_seconds)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "ReportFetcher":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def fetch(self, url: str, report_type: str = "unknown") -> str:
        """GET ``url`` and return the decoded body.

        Raises:
            SourceFetchError: See class docstring for the subclasses
        """
        session = await self._get_session()
        start = time.perf_counter()

        try:
            async with session.get(
                url,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                allow_redirects=True,
            ) as response:
                if not 200 <= response.status < 300:
                    raise http_error_for_status(response.status, url=url, reason=response.reason)

                body = await response.read()
                if response.status == 204 or not body:
                    raise EmptyResponseError(
                        f"Empty response body from {url} (HTTP {response.status})", url=url
                    )

                text = body.decode(response.charset or "utf-8", errors="replace")

        except TimeoutError as e:
            raise TransportError(
                f"Timed out after {self.timeout_seconds}s fetching {url}", url=url, cause=e
            ) from e
        except aiohttp.ClientError as e:
            raise TransportError(f"Connection error fetching {url}", url=url, cause=e) from e
        finally:
            csv_fetch_duration_seconds.labels(report_type=report_type).observe(
                time.perf_counter() - start
            )

        log_with_context(
            logger,
            logging.DEBUG,
            "Report document fetched",
            url=url,
            status_code=response.status,
            content_length=len(body),
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return text
