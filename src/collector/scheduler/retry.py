"""
Fetch retry state machine for one report type.

Each attempt becomes an immutable JobAttempt. Only 5xx responses are
retried; every other failure ends the task on the first occurrence:

    success                    -> SUCCESS
    5xx, retries remaining     -> RETRY_SCHEDULED (sleep, then attempt again)
    5xx, retries exhausted     -> FAILED  max_retries_exceeded
    404                        -> SKIPPED not_yet_available
    other 4xx                  -> FAILED  client_error
    connection/DNS/timeout     -> FAILED  transport_error
    2xx with empty body        -> FAILED  empty_response
    anything else              -> FAILED  unexpected_error
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from collector.common.metrics import record_fetch_retry
from collector.common.types import JobAttempt, JobOutcome, SourceType
from core.errors.exceptions import (
    EmptyResponseError,
    HttpClientError,
    HttpNotFoundError,
    HttpServerError,
    TransportError,
)
from core.logging.utilities import log_exception, log_with_context
from core.resilience.retry import DEFAULT_FETCH_RETRY, RetryConfig

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# Terminal reasons
MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
NOT_YET_AVAILABLE = "not_yet_available"
CLIENT_ERROR = "client_error"
TRANSPORT_ERROR = "transport_error"
EMPTY_RESPONSE = "empty_response"
UNEXPECTED_ERROR = "unexpected_error"
TIMEOUT = "timeout"
SERVER_ERROR = "server_error"


async def run_with_fetch_retry(
    operation: Callable[[], Awaitable[Any]],
    source_type: SourceType,
    retry: RetryConfig | None = None,
    sleep: Sleep = asyncio.sleep,
    url: str | None = None,
    attempts: list[JobAttempt] | None = None,
) -> list[JobAttempt]:
    """Run ``operation`` until it reaches a terminal outcome.

    Args:
        operation: Fetch-and-publish coroutine factory, called once per attempt
        source_type: Report type, used for attempt records and metrics
        retry: Backoff policy; delay before retry k is ``retry.get_delay(k)``
        sleep: Awaitable sleep, replaced in tests to record delays
        url: Only used for log context
        attempts: Optional list to append to. Passing one lets a caller that
            cancels this coroutine keep the attempts made so far.

    Returns:
        Every attempt in order; the last one is terminal.
    """
    retry = retry or DEFAULT_FETCH_RETRY
    attempts = [] if attempts is None else attempts
    report_type = source_type.value

    for attempt_index in range(retry.max_attempts):
        attempt_number = attempt_index + 1
        log_with_context(
            logger,
            logging.INFO,
            "Attempting report",
            url=url,
            attempt=attempt_number,
            max_attempts=retry.max_attempts,
            report_type=report_type,
        )

        try:
            await operation()

        except HttpServerError as e:
            if attempt_index >= retry.max_retries:
                log_with_context(
                    logger,
                    logging.ERROR,
                    "Max retry attempts reached",
                    url=url,
                    status_code=e.status_code,
                    attempt=attempt_number,
                    max_attempts=retry.max_attempts,
                    reason=MAX_RETRIES_EXCEEDED,
                    report_type=report_type,
                )
                attempts.append(
                    JobAttempt(
                        source_type,
                        attempt_number,
                        JobOutcome.FAILED,
                        reason=MAX_RETRIES_EXCEEDED,
                        status_code=e.status_code,
                    )
                )
                return attempts

            delay = retry.get_delay(attempt_index)
            attempts.append(
                JobAttempt(
                    source_type,
                    attempt_number,
                    JobOutcome.RETRY_SCHEDULED,
                    reason=SERVER_ERROR,
                    status_code=e.status_code,
                    delay_seconds=delay,
                )
            )
            record_fetch_retry(report_type)
            log_with_context(
                logger,
                logging.WARNING,
                "Server error, retrying with exponential backoff",
                url=url,
                status_code=e.status_code,
                attempt=attempt_number,
                max_attempts=retry.max_attempts,
                delay_seconds=delay,
                report_type=report_type,
            )
            await sleep(delay)
            continue

        except HttpNotFoundError as e:
            log_with_context(
                logger,
                logging.INFO,
                "Report not published yet (404), skipping",
                url=url,
                status_code=e.status_code,
                reason=NOT_YET_AVAILABLE,
                report_type=report_type,
            )
            attempts.append(
                JobAttempt(
                    source_type,
                    attempt_number,
                    JobOutcome.SKIPPED,
                    reason=NOT_YET_AVAILABLE,
                    status_code=e.status_code,
                )
            )
            return attempts

        except HttpClientError as e:
            log_exception(
                logger, e, "Client error", include_traceback=False,
                url=url, status_code=e.status_code, reason=CLIENT_ERROR, report_type=report_type,
            )
            attempts.append(
                JobAttempt(
                    source_type,
                    attempt_number,
                    JobOutcome.FAILED,
                    reason=CLIENT_ERROR,
                    status_code=e.status_code,
                )
            )
            return attempts

        except TransportError as e:
            log_exception(
                logger, e, "Failed to reach report source", include_traceback=False,
                url=url, reason=TRANSPORT_ERROR, report_type=report_type,
            )
            attempts.append(
                JobAttempt(source_type, attempt_number, JobOutcome.FAILED, reason=TRANSPORT_ERROR)
            )
            return attempts

        except EmptyResponseError as e:
            log_exception(
                logger, e, "Report source returned an empty body", include_traceback=False,
                url=url, reason=EMPTY_RESPONSE, report_type=report_type,
            )
            attempts.append(
                JobAttempt(source_type, attempt_number, JobOutcome.FAILED, reason=EMPTY_RESPONSE)
            )
            return attempts

        except Exception as e:
            log_exception(
                logger, e, "Failed to process report",
                url=url, reason=UNEXPECTED_ERROR, report_type=report_type,
            )
            attempts.append(
                JobAttempt(source_type, attempt_number, JobOutcome.FAILED, reason=UNEXPECTED_ERROR)
            )
            return attempts

        log_with_context(
            logger,
            logging.INFO,
            "Completed report",
            url=url,
            attempt=attempt_number,
            report_type=report_type,
        )
        attempts.append(JobAttempt(source_type, attempt_number, JobOutcome.SUCCESS))
        return attempts

    # Unreachable: the last 5xx attempt returns above
    return attempts
