from __future__ import annotations

from typing import Any, Optional

from loguru import logger

from .errors import BatchAlreadyEnabledError
from .options import DEFAULT_OPTIONS, BatchOptions
from .processor import BatchProcessor, ProcessorHealth
from .types import Batch, ConsistencyLevel, DestinationKey, TimeUnit, Transport


class BatchingClient:
    """
    Write facade over a transport with optional background batching.

    With batching disabled every write is a synchronous transport call and
    errors propagate to the caller. With batching enabled writes are
    queued and delivered by a BatchProcessor; failures surface only through
    the configured exception handler.

    Usage:
        client = BatchingClient(transport)
        client.enable_batch(BatchOptions(actions=2000, flush_interval=500))
        client.write({"cpu": 0.42}, DatabaseKey("metrics"))
        client.close()  # final flush
    """

    def __init__(
        self,
        transport: Transport[Any],
        *,
        consistency: ConsistencyLevel = ConsistencyLevel.ONE,
        precision: TimeUnit = TimeUnit.NANOSECONDS,
    ):
        self._transport = transport
        self._consistency = consistency
        self._precision = precision
        self._processor: Optional[BatchProcessor] = None

    # --------------- context management

    def __enter__(self) -> "BatchingClient":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # --------------- batching toggle

    @property
    def is_batch_enabled(self) -> bool:
        return self._processor is not None

    def enable_batch(
        self, options: BatchOptions = DEFAULT_OPTIONS, *, processor_id: Optional[str] = None
    ) -> "BatchingClient":
        if self._processor is not None:
            raise BatchAlreadyEnabledError(
                "Batch has been enabled already; call disable_batch() first"
            )
        self._processor = BatchProcessor(self._transport, options, processor_id=processor_id)
        logger.debug(f"Batching enabled ({self._processor.processor_id})")
        return self

    def disable_batch(self) -> None:
        """Flush pending points and stop the background scheduler."""
        processor, self._processor = self._processor, None
        if processor is not None:
            processor.flush_and_shutdown()
            logger.debug(f"Batching disabled ({processor.processor_id})")

    # --------------- writes

    def write(self, point: Any, key: DestinationKey) -> None:
        if self._processor is not None:
            self._processor.write(point, key)
            return
        self._transport.write(
            Batch(key=key, consistency=self._consistency, precision=self._precision, points=[point])
        )

    def write_batch(self, batch: Batch[Any]) -> None:
        if self._processor is not None:
            self._processor.write_batch(batch)
            return
        self._transport.write(batch)

    def flush(self) -> None:
        """Force delivery of queued points. Raises if batching is not enabled."""
        if self._processor is None:
            raise RuntimeError("flush() requires batching to be enabled")
        self._processor.flush()

    def health(self) -> Optional[ProcessorHealth]:
        return self._processor.health() if self._processor is not None else None

    def close(self) -> None:
        self.disable_batch()
        close = getattr(self._transport, "close", None)
        if callable(close):
            close()
