"""JSON message producer over aiokafka."""

import asyncio
import logging
import time
from typing import Any

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel

from collector.common.types import ProduceResult
from config.config import KafkaSettings
from core.utils.json_serializers import dumps_bytes

logger = logging.getLogger(__name__)

MessageValue = BaseModel | dict[str, Any] | bytes


def _encode_value(value: MessageValue) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")
    return dumps_bytes(value)


def _encode_key(key: str | bytes | None) -> bytes | None:
    if key is None or isinstance(key, bytes):
        return key
    return key.encode("utf-8")


class MessageProducer:
    """Async JSON producer with batch send and explicit lifecycle.

    Values may be pydantic models (serialized by alias), plain dicts, or
    pre-encoded bytes.
    """

    def __init__(self, config: KafkaSettings, client_id: str | None = None):
        self.config = config
        self.client_id = client_id or config.client_id
        self._producer: AIOKafkaProducer | None = None
        self._started = False

    def _build_producer_config(self) -> dict[str, Any]:
        acks_value: Any = self.config.acks
        if isinstance(acks_value, str) and acks_value.lstrip("-").isdigit():
            acks_value = int(acks_value)

        compression = self.config.compression_type
        return {
            "bootstrap_servers": self.config.bootstrap_servers,
            "client_id": self.client_id,
            "value_serializer": lambda v: v,
            "request_timeout_ms": self.config.request_timeout_ms,
            "acks": acks_value,
            "linger_ms": self.config.linger_ms,
            "compression_type": None if compression == "none" else compression,
        }

    async def start(self) -> None:
        if self._started:
            logger.warning("Producer already started, ignoring duplicate start call")
            return

        logger.info(
            "Starting message producer",
            extra={"bootstrap_servers": self.config.bootstrap_servers},
        )

        producer = AIOKafkaProducer(**self._build_producer_config())
        try:
            await asyncio.wait_for(
                producer.start(), timeout=self.config.connect_timeout_ms / 1000
            )
        except BaseException:
            # A half-started client still owns sockets and a sender task
            await producer.stop()
            raise

        self._producer = producer
        self._started = True

        logger.info(
            "Message producer started successfully",
            extra={
                "bootstrap_servers": self.config.bootstrap_servers,
                "operation": f"acks={self.config.acks}",
            },
        )

    async def stop(self) -> None:
        # Errors during stop are logged but not re-raised to avoid masking original exceptions
        if self._producer is None:
            logger.debug("Producer already stopped")
            return

        logger.info("Stopping message producer")

        try:
            if self._started:
                await self._producer.flush()
            await self._producer.stop()
            logger.info("Message producer stopped successfully")
        except Exception as e:
            logger.error(
                "Error stopping message producer",
                extra={"error": str(e)},
                exc_info=True,
            )
        finally:
            self._producer = None
            self._started = False

    async def send(
        self,
        topic: str,
        key: str | bytes | None,
        value: MessageValue,
    ) -> ProduceResult:
        if not self._started or self._producer is None:
            raise RuntimeError("Producer not started. Call start() first.")

        value_bytes = _encode_value(value)

        metadata = await self._producer.send_and_wait(
            topic,
            key=_encode_key(key),
            value=value_bytes,
        )

        logger.debug(
            "Message sent successfully",
            extra={"topic": metadata.topic, "content_length": len(value_bytes)},
        )
        return ProduceResult(
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
        )

    async def send_batch(
        self,
        topic: str,
        messages: list[tuple[str | bytes | None, MessageValue]],
    ) -> list[ProduceResult]:
        """Send every message, then await every delivery.

        Any failed delivery fails the whole call. Messages that were already
        acknowledged are not rolled back, so a retried batch may duplicate.
        """
        if not self._started or self._producer is None:
            raise RuntimeError("Producer not started. Call start() first.")

        if not messages:
            logger.warning("send_batch called with empty message list")
            return []

        logger.debug(
            "Sending batch",
            extra={"topic": topic, "message_count": len(messages)},
        )

        start_time = time.perf_counter()
        futures = []
        for key, value in messages:
            future = await self._producer.send(
                topic,
                key=_encode_key(key),
                value=_encode_value(value),
            )
            futures.append(future)

        try:
            results = []
            for future in futures:
                metadata = await future
                results.append(ProduceResult(
                    topic=metadata.topic, partition=metadata.partition, offset=metadata.offset,
                ))
        except Exception as e:
            logger.warning(
                "Failed to send batch",
                extra={
                    "topic": topic,
                    "message_count": len(messages),
                    "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
                    "error": str(e),
                },
            )
            raise

        logger.debug(
            "Batch sent successfully",
            extra={
                "topic": topic,
                "message_count": len(results),
                "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
            },
        )
        return results

    async def flush(self) -> None:
        if not self._started or self._producer is None:
            raise RuntimeError("Producer not started. Call start() first.")
        await self._producer.flush()

    @property
    def is_started(self) -> bool:
        return self._started and self._producer is not None


__all__ = [
    "MessageProducer",
    "AIOKafkaProducer",
    "ProduceResult",
]
