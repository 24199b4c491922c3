from __future__ import annotations

import asyncio
from typing import Any, Optional

from .client import BatchingClient
from .options import DEFAULT_OPTIONS, BatchOptions
from .processor import ProcessorHealth
from .types import Batch, DestinationKey, Transport


class AsyncBatchingClient:
    """
    asyncio facade over BatchingClient.

    Writes can block on a full ingest queue, so they run in a worker
    thread and never stall the event loop.

        async with AsyncBatchingClient(transport, BatchOptions(actions=500)) as client:
            for p in points:
                await client.write(p, DatabaseKey("metrics"))
        # final flush + shutdown on exit
    """

    def __init__(
        self,
        transport: Transport[Any],
        options: Optional[BatchOptions] = DEFAULT_OPTIONS,
        *,
        processor_id: Optional[str] = None,
    ):
        self._client = BatchingClient(transport)
        if options is not None:
            self._client.enable_batch(options, processor_id=processor_id)

    @property
    def sync_client(self) -> BatchingClient:
        return self._client

    # --------------- context management

    async def __aenter__(self) -> "AsyncBatchingClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # --------------- public API

    async def write(self, point: Any, key: DestinationKey) -> None:
        await asyncio.to_thread(self._client.write, point, key)

    async def write_batch(self, batch: Batch[Any]) -> None:
        await asyncio.to_thread(self._client.write_batch, batch)

    async def flush(self) -> None:
        await asyncio.to_thread(self._client.flush)

    def health(self) -> Optional[ProcessorHealth]:
        return self._client.health()

    async def close(self) -> None:
        await asyncio.to_thread(self._client.close)
