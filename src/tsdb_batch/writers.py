"""
Delivery strategies for grouped batches.

- OneShotBatchWriter: one transport call per batch, never retried.
- RetryCapableBatchWriter: failed-but-retryable batches wait in a bounded,
  FIFO RetryBacklog and are retried oldest first on every later flush.

The strategy is chosen once from configuration by select_writer().
"""

from __future__ import annotations

import dataclasses
import itertools
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from time import perf_counter
from typing import Any, Deque, Iterator, List, Optional, Protocol, Sequence

from loguru import logger

from .errors import BufferOverrunError, UndeliveredBatchesError
from .metrics import BatchMetrics
from .options import BatchOptions
from .types import Batch, Classifier, ExceptionHandler, Transport


def notify_lost(handler: ExceptionHandler, points: List[Any], exc: BaseException) -> None:
    """Hand lost points to the user's exception handler; its own errors are logged only."""
    try:
        handler(points, exc)
    except Exception as handler_exc:
        logger.error(
            f"Exception handler raised (ignored): {type(handler_exc).__name__}: {handler_exc}"
        )


class BatchWriter(Protocol):
    name: str

    def write(self, batches: Sequence[Batch[Any]]) -> None: ...

    def close(self) -> None: ...


# --------------------------- one-shot


class OneShotBatchWriter:
    """Writes each batch exactly once; failed batches are raised for the caller to report."""

    name = "one_shot"

    def __init__(self, transport: Transport[Any], metrics: BatchMetrics):
        self._transport = transport
        self._metrics = metrics

    def write(self, batches: Sequence[Batch[Any]]) -> None:
        failures = []
        for batch in batches:
            t0 = perf_counter()
            try:
                self._transport.write(batch)
            except Exception as exc:
                self._metrics.attempt("failed", (perf_counter() - t0) * 1000.0)
                logger.error(f"Batch for {batch.key} ({len(batch)} points) failed, not retried: {exc}")
                failures.append((batch, exc))
                continue
            self._metrics.attempt("written", (perf_counter() - t0) * 1000.0)
            self._metrics.delivered(self.name, len(batch))

        if failures:
            raise UndeliveredBatchesError(failures)

    def close(self) -> None:
        pass


# --------------------------- retry backlog


class WriteOutcome(str, Enum):
    WRITTEN = "written"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class WriteResult:
    outcome: WriteOutcome
    error: Optional[BaseException] = None


WRITTEN = WriteResult(WriteOutcome.WRITTEN)


@dataclass
class RetryRecord:
    """A batch awaiting retry, tagged with its FIFO submission sequence."""

    batch: Batch[Any]
    seq: int

    @property
    def size(self) -> int:
        return len(self.batch)


class RetryBacklog:
    """
    FIFO store of undelivered batches, bounded by total point count.

    A new batch is merged into the newest record when it targets the same
    destination and the merged record stays within ``merge_limit`` points.
    Not thread-safe; the owning writer serialises access.
    """

    def __init__(self, capacity: int, merge_limit: int):
        self._capacity = capacity
        self._merge_limit = merge_limit
        self._records: Deque[RetryRecord] = deque()
        self._used = 0
        self._seq = itertools.count()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def used(self) -> int:
        return self._used

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[RetryRecord]:
        return iter(list(self._records))

    def oldest(self) -> RetryRecord:
        return self._records[0]

    def pop_oldest(self) -> RetryRecord:
        record = self._records.popleft()
        self._used -= record.size
        return record

    def add(self, batch: Batch[Any]) -> List[RetryRecord]:
        """Insert ``batch``; returns records evicted to get back under capacity."""
        if self._records:
            last = self._records[-1]
            if last.size + len(batch) <= self._merge_limit and last.batch.merge_in(batch):
                self._used += len(batch)
                return self._evict()

        # own a copy so later merges never touch the caller's batch
        owned = dataclasses.replace(batch, points=list(batch.points))
        self._records.append(RetryRecord(batch=owned, seq=next(self._seq)))
        self._used += len(owned)
        return self._evict()

    def _evict(self) -> List[RetryRecord]:
        evicted = []
        while self._used > self._capacity and self._records:
            evicted.append(self.pop_oldest())
        return evicted


# --------------------------- retry-capable


class RetryCapableBatchWriter:
    """
    Retries batches that failed for a transient reason, preserving order.

    Per flush, buffered records are retried oldest first. The first record
    that still fails with a retryable error stops the walk and every new
    batch is queued behind it, so a newer batch for a destination is never
    written before an older one.
    """

    name = "retry"

    def __init__(
        self,
        transport: Transport[Any],
        *,
        buffer_limit: int,
        actions: int,
        exception_handler: ExceptionHandler,
        classifier: Classifier,
        metrics: BatchMetrics,
    ):
        self._transport = transport
        self._backlog = RetryBacklog(capacity=buffer_limit, merge_limit=actions)
        self._handler = exception_handler
        self._classify = classifier
        self._metrics = metrics
        # flush() from user threads vs the scheduler, and close() vs an in-flight write
        self._lock = threading.RLock()

    @property
    def backlog_points(self) -> int:
        with self._lock:
            return self._backlog.used

    @property
    def backlog_batches(self) -> int:
        with self._lock:
            return len(self._backlog)

    def buffered(self) -> List[Batch[Any]]:
        with self._lock:
            return [r.batch for r in self._backlog]

    def write(self, batches: Sequence[Batch[Any]]) -> None:
        with self._lock:
            try:
                self._write_locked(batches)
            finally:
                self._metrics.backlog(self._backlog.used)

    def _write_locked(self, batches: Sequence[Batch[Any]]) -> None:
        while len(self._backlog):
            record = self._backlog.oldest()
            result = self._try_write(record.batch)
            if result.outcome is WriteOutcome.RETRYABLE:
                logger.warning(
                    f"Buffered batch #{record.seq} for {record.batch.key} still failing "
                    f"({result.error}); queueing {len(batches)} new batch(es) behind it"
                )
                for batch in batches:
                    self._buffer(batch)
                return
            self._backlog.pop_oldest()
            if result.outcome is WriteOutcome.PERMANENT:
                self._lose(record.batch.points, result.error, "permanent")

        pending = list(batches)
        for i, batch in enumerate(pending):
            result = self._try_write(batch)
            if result.outcome is WriteOutcome.RETRYABLE:
                logger.warning(
                    f"Batch for {batch.key} ({len(batch)} points) failed, buffering for retry: "
                    f"{result.error}"
                )
                for rest in pending[i:]:
                    self._buffer(rest)
                return
            if result.outcome is WriteOutcome.PERMANENT:
                self._lose(batch.points, result.error, "permanent")

    def close(self) -> None:
        """Try every buffered batch once more; report whatever is still undelivered."""
        with self._lock:
            while len(self._backlog):
                record = self._backlog.pop_oldest()
                result = self._try_write(record.batch)
                if result.outcome is not WriteOutcome.WRITTEN:
                    self._lose(record.batch.points, result.error, "shutdown")
            self._metrics.backlog(0)

    # --------------------------- internals

    def _try_write(self, batch: Batch[Any]) -> WriteResult:
        t0 = perf_counter()
        try:
            self._transport.write(batch)
        except Exception as exc:
            outcome = self._classify_failure(exc)
            self._metrics.attempt(outcome.value, (perf_counter() - t0) * 1000.0)
            return WriteResult(outcome, exc)
        self._metrics.attempt(WriteOutcome.WRITTEN.value, (perf_counter() - t0) * 1000.0)
        self._metrics.delivered(self.name, len(batch))
        return WRITTEN

    def _classify_failure(self, exc: BaseException) -> WriteOutcome:
        try:
            retryable = self._classify(exc)
        except Exception as classifier_exc:
            logger.error(
                f"Retry classifier raised {type(classifier_exc).__name__}: {classifier_exc} "
                f"while classifying {type(exc).__name__}; treating it as retryable"
            )
            return WriteOutcome.RETRYABLE
        return WriteOutcome.RETRYABLE if retryable else WriteOutcome.PERMANENT

    def _buffer(self, batch: Batch[Any]) -> None:
        for record in self._backlog.add(batch):
            logger.warning(
                f"Retry buffer full ({self._backlog.capacity} points); evicting batch "
                f"#{record.seq} for {record.batch.key} ({record.size} points)"
            )
            self._lose(record.batch.points, BufferOverrunError(self._backlog.capacity), "overrun")

    def _lose(self, points: List[Any], exc: Optional[BaseException], reason: str) -> None:
        if reason != "overrun":
            logger.error(f"Dropping {len(points)} point(s) ({reason}): {exc}")
        self._metrics.lost(reason, len(points))
        notify_lost(self._handler, points, exc)


def select_writer(
    transport: Transport[Any], options: BatchOptions, metrics: BatchMetrics
) -> BatchWriter:
    """Retry-capable when the retry buffer is larger than the action threshold, else one-shot."""
    if options.retries_enabled:
        return RetryCapableBatchWriter(
            transport,
            buffer_limit=options.buffer_limit,
            actions=options.actions,
            exception_handler=options.exception_handler,
            classifier=options.retry_classifier,
            metrics=metrics,
        )
    return OneShotBatchWriter(transport, metrics)
