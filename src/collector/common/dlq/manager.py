"""Dead-letter routing for batches that exhausted primary publish retries.

Cascade: dead-letter topic, then a local fallback file, then a CRITICAL
log. Nothing here raises; every record leaves with a recorded outcome.
"""

import logging
import traceback
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from collector.common.connection import BrokerConnectionManager
from collector.common.dlq.fallback import write_fallback_file
from collector.common.dlq.models import (
    PUBLISH_FAILURE,
    DeadLetterEnvelope,
    DeadLetterMetadata,
)
from collector.common.metrics import (
    record_fallback_records,
    record_records_lost,
    record_rows_dead_lettered,
)
from collector.common.types import Batch
from config.config import DeadLetterSettings
from core.errors.exceptions import DeadLetterPublishError, FallbackWriteError
from core.logging.utilities import log_exception

logger = logging.getLogger(__name__)


class DeadLetterDestination(str, Enum):
    TOPIC = "topic"
    FILE = "file"
    LOST = "lost"
    DISABLED = "disabled"
    EMPTY = "empty"


@dataclass(frozen=True)
class DeadLetterResult:
    destination: DeadLetterDestination
    count: int
    batch_id: str | None = None
    file_path: Path | None = None


class DeadLetterManager:
    """Wraps undeliverable records in envelopes and routes them somewhere durable."""

    def __init__(
        self,
        config: DeadLetterSettings,
        connection: BrokerConnectionManager,
        primary_topic: str,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.connection = connection
        self.primary_topic = primary_topic
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def build_envelopes(
        self,
        batch: Batch,
        cause: BaseException,
        attempt_number: int,
        batch_id: str,
    ) -> list[DeadLetterEnvelope]:
        now = self._clock()
        trace = None
        if self.config.include_stack_traces:
            trace = "".join(traceback.format_exception(cause))

        metadata = DeadLetterMetadata(
            timestamp=now,
            original_destination=self.primary_topic,
            error_kind=PUBLISH_FAILURE,
            error_message=str(cause) or type(cause).__name__,
            error_trace=trace,
            attempt_number=max(attempt_number, 1),
            batch_id=batch_id,
            source_url=batch.source_url,
            source_type=batch.source_type,
        )
        return [
            DeadLetterEnvelope(original_record=record.as_message(), metadata=metadata)
            for record in batch
        ]

    async def dead_letter(
        self, batch: Batch, cause: BaseException, attempt_number: int
    ) -> int:
        """Route a failed batch; returns how many records were stored durably."""
        result = await self.route(batch, cause, attempt_number)
        if result.destination in (DeadLetterDestination.TOPIC, DeadLetterDestination.FILE):
            return result.count
        return 0

    async def route(
        self, batch: Batch, cause: BaseException, attempt_number: int
    ) -> DeadLetterResult:
        if not self.config.enabled:
            return DeadLetterResult(DeadLetterDestination.DISABLED, 0)
        if len(batch) == 0:
            return DeadLetterResult(DeadLetterDestination.EMPTY, 0)

        report_type = batch.source_type.value
        batch_id = str(uuid.uuid4())
        envelopes = self.build_envelopes(batch, cause, attempt_number, batch_id)

        try:
            await self._publish(envelopes, batch_id)
        except DeadLetterPublishError as dlq_error:
            log_exception(
                logger,
                dlq_error,
                "Dead-letter publish failed, writing fallback file",
                include_traceback=False,
                batch_id=batch_id,
                dlq_topic=self.config.topic,
                message_count=len(envelopes),
                report_type=report_type,
            )
            return await self._write_fallback(envelopes, batch_id, dlq_error, report_type)

        record_rows_dead_lettered(report_type, len(envelopes))
        logger.info(
            "Batch routed to dead-letter topic",
            extra={
                "batch_id": batch_id,
                "dlq_topic": self.config.topic,
                "message_count": len(envelopes),
                "attempt": attempt_number,
                "url": batch.source_url,
                "report_type": report_type,
            },
        )
        return DeadLetterResult(DeadLetterDestination.TOPIC, len(envelopes), batch_id)

    async def _publish(self, envelopes: list[DeadLetterEnvelope], batch_id: str) -> None:
        try:
            producer = await self.connection.acquire()
        except Exception as e:
            raise DeadLetterPublishError(
                "Broker unavailable for dead-letter publish", topic=self.config.topic, cause=e
            ) from e

        try:
            await producer.send_batch(
                self.config.topic, [(batch_id, envelope) for envelope in envelopes]
            )
        except Exception as e:
            raise DeadLetterPublishError(
                "Dead-letter topic rejected batch", topic=self.config.topic, cause=e
            ) from e
        finally:
            await self.connection.release()

    async def _write_fallback(
        self,
        envelopes: list[DeadLetterEnvelope],
        batch_id: str,
        dlq_error: DeadLetterPublishError,
        report_type: str,
    ) -> DeadLetterResult:
        try:
            path = await write_fallback_file(
                envelopes,
                self.config.fallback_directory,
                reason=str(dlq_error),
                max_file_size_mb=self.config.max_file_size_mb,
                now=self._clock(),
            )
        except FallbackWriteError as e:
            record_records_lost(report_type, len(envelopes))
            logger.critical(
                "Fallback file write failed, dead-letter records lost",
                extra={
                    "batch_id": batch_id,
                    "records_lost": len(envelopes),
                    "file_path": e.path,
                    "error": str(e),
                    "sample_envelope": envelopes[0].model_dump_json(),
                    "report_type": report_type,
                },
            )
            return DeadLetterResult(DeadLetterDestination.LOST, len(envelopes), batch_id)

        record_fallback_records(report_type, len(envelopes))
        return DeadLetterResult(
            DeadLetterDestination.FILE, len(envelopes), batch_id, file_path=path
        )
