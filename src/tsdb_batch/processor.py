"""
BatchProcessor: ingest queue + single flush scheduler thread.

Producers call write()/write_batch() from any thread. One background
thread runs every scheduled flush cycle, either when the (jittered)
flush interval elapses or as soon as the queue reaches the action
threshold. A flush lock serialises those cycles with manual flush() calls.
"""

from __future__ import annotations

import random
import threading
import uuid
from dataclasses import dataclass
from time import monotonic
from typing import Any, List, Optional

from loguru import logger

from .errors import ProcessorClosedError, SchedulerFault, UndeliveredBatchesError
from .grouping import group_entries
from .metrics import BatchMetrics
from .options import DEFAULT_OPTIONS, BatchOptions
from .queue import IngestQueue
from .types import Batch, BatchEntry, DestinationKey, Entry, PointEntry, Transport
from .writers import BatchWriter, RetryCapableBatchWriter, notify_lost, select_writer


@dataclass(frozen=True)
class ProcessorHealth:
    processor_id: str
    running: bool
    strategy: str
    queue_size: int
    queue_capacity: int
    backlog_points: int
    backlog_batches: int
    buffer_limit: int


class BatchProcessor:
    """
    Collects single point writes and delivers them as per-destination batches.

    Example:
        processor = BatchProcessor(transport, BatchOptions(actions=500, flush_interval=100))
        processor.write(point, DatabaseKey("telemetry", "autogen"))
        ...
        processor.flush_and_shutdown()
    """

    def __init__(
        self,
        transport: Transport[Any],
        options: BatchOptions = DEFAULT_OPTIONS,
        *,
        processor_id: Optional[str] = None,
        start: bool = True,
    ):
        self._options = options
        self._id = processor_id or f"batch-{uuid.uuid4().hex[:8]}"
        self._metrics = BatchMetrics(self._id)
        self._writer: BatchWriter = select_writer(transport, options, self._metrics)

        self._queue: IngestQueue[Entry] = IngestQueue(
            options.actions,
            drop_on_full=options.drop_actions_on_queue_exhaustion,
            on_threshold=self._on_threshold,
            on_drop=self._on_drop,
        )

        self._flush_lock = threading.Lock()
        self._flush_owner: Optional[int] = None
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._closed = False
        # set once the final drain has run; later puts report their own entry
        self._sealed = False
        self._thread: Optional[threading.Thread] = None

        logger.debug(
            f"BatchProcessor {self._id}: actions={options.actions} "
            f"flush={options.flush_interval}{options.interval_unit.value} "
            f"jitter={options.jitter_interval}{options.interval_unit.value} "
            f"buffer_limit={options.buffer_limit} strategy={self._writer.name}"
        )
        if start:
            self.start()

    # --------------------------- properties

    @property
    def processor_id(self) -> str:
        return self._id

    @property
    def options(self) -> BatchOptions:
        return self._options

    @property
    def writer(self) -> BatchWriter:
        return self._writer

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    # --------------------------- lifecycle

    def start(self) -> None:
        if self._closed:
            raise ProcessorClosedError(f"BatchProcessor {self._id} has been shut down")
        if self._thread is not None:
            return
        self._thread = self._options.thread_factory(self._run, f"tsdb-batch-{self._id}")
        self._thread.start()
        logger.debug(f"BatchProcessor {self._id} scheduler started")

    def flush_and_shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop the scheduler, run one final flush, and release the writer. Idempotent.

        Entries that reach the queue after the final flush (a producer that
        was blocked on a full queue) are reported to the exception handler
        with ProcessorClosedError.
        """
        self._check_not_flushing()
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        self._wake.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(f"BatchProcessor {self._id} scheduler did not stop within {timeout}s")

        self._flush_cycle("shutdown")
        with self._flush_lock:
            self._writer.close()
        self._sealed = True
        self._report_leftovers()
        self._metrics.release()
        logger.debug(f"BatchProcessor {self._id} shut down")

    # --------------------------- producers

    def write(self, point: Any, key: DestinationKey) -> bool:
        """Enqueue one point. Blocks while the queue is full unless configured to drop."""
        return self._put(PointEntry(point=point, key=key), 1)

    def write_batch(self, batch: Batch[Any]) -> bool:
        """Enqueue a pre-built batch; it goes through the same delivery strategy."""
        return self._put(BatchEntry(batch=batch), len(batch))

    def _put(self, entry: Entry, npoints: int) -> bool:
        if self._closed:
            raise ProcessorClosedError(f"BatchProcessor {self._id} has been shut down")
        accepted = self._queue.put(entry)
        if accepted:
            self._metrics.enqueued(npoints)
            if self._sealed:
                # the put finished after the final drain; nothing will deliver it
                self._report_leftovers()
        return accepted

    def flush(self) -> None:
        """
        Run one flush cycle synchronously on the calling thread.

        Raises RuntimeError when called from inside a flush cycle, e.g. from
        the exception handler.
        """
        self._flush_cycle("manual")

    # --------------------------- health

    def health(self) -> ProcessorHealth:
        backlog_points = backlog_batches = 0
        if isinstance(self._writer, RetryCapableBatchWriter):
            backlog_points = self._writer.backlog_points
            backlog_batches = self._writer.backlog_batches
        return ProcessorHealth(
            processor_id=self._id,
            running=self.is_running,
            strategy=self._writer.name,
            queue_size=self._queue.size,
            queue_capacity=self._queue.capacity,
            backlog_points=backlog_points,
            backlog_batches=backlog_batches,
            buffer_limit=self._options.buffer_limit,
        )

    # --------------------------- scheduler

    def _next_delay(self) -> float:
        jitter = random.uniform(0, self._options.jitter_interval_seconds)
        return self._options.flush_interval_seconds + jitter

    def _run(self) -> None:
        deadline = monotonic() + self._next_delay()
        while not self._stop.is_set():
            woken = self._wake.wait(timeout=max(0.0, deadline - monotonic()))
            if self._stop.is_set():
                break
            if woken:
                self._wake.clear()
                self._flush_cycle("threshold")
            else:
                self._flush_cycle("periodic")
                deadline = monotonic() + self._next_delay()
        logger.debug(f"BatchProcessor {self._id} scheduler stopped")

    def _on_threshold(self) -> None:
        self._wake.set()

    def _on_drop(self, entry: Entry) -> None:
        self._metrics.lost("queue_full", len(entry.points))
        for point in entry.points:
            try:
                self._options.dropped_action_handler(point)
            except Exception as exc:
                logger.error(f"Dropped-action handler raised (ignored): {type(exc).__name__}: {exc}")

    def _check_not_flushing(self) -> None:
        # the flush lock is not reentrant; the exception handler runs under it
        if self._flush_owner == threading.get_ident():
            raise RuntimeError(
                f"BatchProcessor {self._id}: cannot flush from inside a flush cycle "
                "(called from the exception handler?)"
            )

    def _flush_cycle(self, trigger: str) -> None:
        """Drain, group and deliver. Never raises; failures go to the exception handler."""
        self._check_not_flushing()
        with self._flush_lock:
            self._flush_owner = threading.get_ident()
            try:
                self._flush_locked(trigger)
            finally:
                self._flush_owner = None

    def _flush_locked(self, trigger: str) -> None:
        entries: List[Entry] = []
        delivering = False
        try:
            entries = self._queue.drain()
            if not entries and not self._has_backlog():
                return
            self._metrics.flush_cycle(trigger)
            batches = group_entries(entries, self._options.consistency, self._options.precision)
            logger.debug(
                f"BatchProcessor {self._id} {trigger} flush: "
                f"{len(entries)} entries -> {len(batches)} batch(es)"
            )
            delivering = True
            self._writer.write(batches)
        except UndeliveredBatchesError as exc:
            for batch, cause in exc.failures:
                self._metrics.lost("one_shot", len(batch))
                notify_lost(self._options.exception_handler, list(batch.points), cause)
        except Exception as exc:
            self._metrics.scheduler_fault()
            logger.exception(f"BatchProcessor {self._id} flush cycle failed: {exc}")
            fault = SchedulerFault(f"flush cycle failed: {type(exc).__name__}: {exc}")
            fault.__cause__ = exc
            lost = [] if delivering else [p for e in entries for p in e.points]
            notify_lost(self._options.exception_handler, lost, fault)

    def _report_leftovers(self) -> None:
        """Report entries still queued after the final flush."""
        with self._flush_lock:
            entries = self._queue.drain()
        points = [p for e in entries for p in e.points]
        if not points:
            return
        logger.warning(
            f"BatchProcessor {self._id}: {len(points)} point(s) arrived after shutdown, not delivered"
        )
        self._metrics.lost("shutdown", len(points))
        notify_lost(
            self._options.exception_handler,
            points,
            ProcessorClosedError(f"BatchProcessor {self._id} has been shut down"),
        )

    def _has_backlog(self) -> bool:
        return isinstance(self._writer, RetryCapableBatchWriter) and self._writer.backlog_batches > 0
