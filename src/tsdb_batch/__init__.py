"""
Time-series write batching (client side)

Decouples application threads that produce points from the network calls
that deliver them:
- IngestQueue fed by any number of producer threads (bounded, blocking)
- BatchProcessor: one scheduler thread, jittered periodic + threshold flushes
- Grouping of drained points into per-destination batches
- OneShotBatchWriter / RetryCapableBatchWriter with a bounded FIFO backlog
- Exception handler callback for every lost point
- Prometheus metrics and environment-based settings
"""

from .types import (
    Batch,
    BatchEntry,
    ConsistencyLevel,
    DatabaseKey,
    DestinationKey,
    PointEntry,
    TimeUnit,
    Transport,
    UdpKey,
)
from .errors import (
    BatchAlreadyEnabledError,
    BufferOverrunError,
    PermanentDeliveryError,
    ProcessorClosedError,
    SchedulerFault,
    TransientDeliveryError,
    TsdbWriteError,
    UndeliveredBatchesError,
    default_retry_classifier,
    map_server_error,
)
from .options import DEFAULT_OPTIONS, BatchOptions
from .settings import BatchSettings
from .queue import IngestQueue
from .grouping import group_entries
from .writers import (
    OneShotBatchWriter,
    RetryBacklog,
    RetryCapableBatchWriter,
    select_writer,
)
from .processor import BatchProcessor, ProcessorHealth
from .client import BatchingClient
from .aclient import AsyncBatchingClient
from .transports import InMemoryTransport

__version__ = "1.0.0"
__all__ = [
    # types
    "Batch",
    "BatchEntry",
    "ConsistencyLevel",
    "DatabaseKey",
    "DestinationKey",
    "PointEntry",
    "TimeUnit",
    "Transport",
    "UdpKey",
    # errors
    "TsdbWriteError",
    "TransientDeliveryError",
    "PermanentDeliveryError",
    "BufferOverrunError",
    "SchedulerFault",
    "UndeliveredBatchesError",
    "ProcessorClosedError",
    "BatchAlreadyEnabledError",
    "default_retry_classifier",
    "map_server_error",
    # config
    "BatchOptions",
    "BatchSettings",
    "DEFAULT_OPTIONS",
    # runtime
    "IngestQueue",
    "group_entries",
    "OneShotBatchWriter",
    "RetryBacklog",
    "RetryCapableBatchWriter",
    "select_writer",
    "BatchProcessor",
    "ProcessorHealth",
    "BatchingClient",
    "AsyncBatchingClient",
    # tooling
    "InMemoryTransport",
]
