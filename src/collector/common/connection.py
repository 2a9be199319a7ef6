"""Shared, reference-counted broker connection.

Every publisher (primary batches, dead-letter envelopes, the process
itself for readiness) acquires the same MessageProducer. The first
acquisition connects; concurrent first acquisitions wait on that single
connect instead of starting their own. The producer is stopped only when
the last holder releases it.
"""

import asyncio
import logging
from collections.abc import Callable

from collector.common.metrics import update_connection_status
from collector.common.producer import MessageProducer
from config.config import KafkaSettings
from core.errors.exceptions import BrokerConnectionError

logger = logging.getLogger(__name__)

ProducerFactory = Callable[[], MessageProducer]


class BrokerConnectionManager:
    """Owns the process-wide producer and its reference count.

    Invariants:
        - ``start()`` runs at most once per connected period.
        - ``ref_count`` never goes negative.
        - A failed connect does not take a reference.
    """

    def __init__(
        self,
        config: KafkaSettings,
        producer_factory: ProducerFactory | None = None,
    ):
        self.config = config
        self._producer_factory = producer_factory or (lambda: MessageProducer(config))
        self._producer: MessageProducer | None = None
        self._ref_count = 0
        self._lock = asyncio.Lock()
        self._pending: asyncio.Future | None = None
        self._connect_count = 0

    @property
    def ref_count(self) -> int:
        return self._ref_count

    @property
    def connect_count(self) -> int:
        """How many times a connect was actually performed."""
        return self._connect_count

    @property
    def is_connected(self) -> bool:
        return self._producer is not None and self._producer.is_started

    async def acquire(self) -> MessageProducer:
        """Take a reference, connecting first if nobody holds one.

        Raises:
            BrokerConnectionError: If the connect attempt fails
        """
        while True:
            async with self._lock:
                if self._producer is not None:
                    self._ref_count += 1
                    return self._producer

                pending = self._pending
                if pending is None:
                    pending = asyncio.get_running_loop().create_future()
                    self._pending = pending
                    owner = True
                else:
                    owner = False

            if owner:
                await self._connect(pending)

            # shield: one waiter being cancelled must not cancel the shared connect
            await asyncio.shield(pending)
            # Loop to take the reference under the lock; if the producer was
            # already released again in between, this reconnects.

    def _fail_pending(self, pending: asyncio.Future, error: Exception) -> None:
        self._pending = None
        pending.set_exception(error)
        # Retrieved so an unobserved failure is not reported at GC time
        pending.exception()

    async def _connect(self, pending: asyncio.Future) -> None:
        # Never raises except on cancellation; failures are delivered via pending
        try:
            producer = self._producer_factory()
            await producer.start()
        except asyncio.CancelledError:
            self._fail_pending(pending, BrokerConnectionError("Broker connect cancelled"))
            raise
        except Exception as e:
            logger.error(
                "Broker connection failed",
                extra={"bootstrap_servers": self.config.bootstrap_servers, "error": str(e)},
            )
            self._fail_pending(
                pending,
                BrokerConnectionError(
                    f"Failed to connect to {self.config.bootstrap_servers}", cause=e
                ),
            )
            return

        self._producer = producer
        self._pending = None
        self._connect_count += 1
        update_connection_status(True)
        logger.info(
            "Broker connection established",
            extra={"bootstrap_servers": self.config.bootstrap_servers},
        )
        pending.set_result(producer)

    def _report_closed(self) -> None:
        # A reconnect may have finished while stop() was awaited
        if self._producer is None:
            update_connection_status(False)
        logger.info("Broker connection closed")

    async def release(self) -> None:
        """Drop a reference; disconnect when none remain."""
        async with self._lock:
            if self._ref_count == 0:
                logger.warning("release() called with no outstanding references")
                return
            self._ref_count -= 1
            if self._ref_count > 0 or self._producer is None:
                return
            producer = self._producer
            self._producer = None

        await producer.stop()
        self._report_closed()

    async def close(self) -> None:
        """Stop the producer regardless of outstanding references."""
        async with self._lock:
            producer = self._producer
            self._producer = None
            if self._ref_count:
                logger.warning(
                    "Closing broker connection with outstanding references",
                    extra={"ref_count": self._ref_count},
                )
            self._ref_count = 0

        if producer is not None:
            await producer.stop()
            self._report_closed()

    async def __aenter__(self) -> MessageProducer:
        return await self.acquire()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.release()
