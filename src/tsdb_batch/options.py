from __future__ import annotations

import dataclasses
import threading
from dataclasses import dataclass
from typing import Any, Callable, List

from .errors import default_retry_classifier
from .types import (
    Classifier,
    ConsistencyLevel,
    DroppedActionHandler,
    ExceptionHandler,
    TimeUnit,
)

# defaults match Telegraf's batching behaviour
DEFAULT_BATCH_ACTIONS_LIMIT = 1000
DEFAULT_BATCH_INTERVAL_DURATION = 1000
DEFAULT_JITTER_INTERVAL_DURATION = 0
DEFAULT_BUFFER_LIMIT = 10000

ThreadFactory = Callable[[Callable[[], None], str], threading.Thread]


def default_thread_factory(target: Callable[[], None], name: str) -> threading.Thread:
    return threading.Thread(target=target, name=name, daemon=True)


def _ignore_lost_points(points: List[Any], exc: BaseException) -> None:
    pass


def _ignore_dropped_point(point: Any) -> None:
    pass


@dataclass(frozen=True)
class BatchOptions:
    """
    Immutable batching configuration for one client instance.

    Derive variants with :meth:`with_` (or ``dataclasses.replace``); the
    instance itself is safe to share between clients and threads.

    Attributes:
        actions: Pending point count that forces an eager flush; also the
            ingest queue capacity.
        flush_interval: Periodic flush interval, in ``interval_unit``.
        jitter_interval: Upper bound of the random delay added to every
            periodic flush, in ``interval_unit``.
        buffer_limit: Retry backlog capacity in points. Values <= actions
            disable retries.
        consistency: Passed through unchanged on every batch.
        precision: Timestamp precision passed through on every batch.
        exception_handler: Called with ``(points, exc)`` whenever points are lost.
            Runs inside the flush cycle, so it must not call flush() or
            flush_and_shutdown(); those raise RuntimeError there.
        thread_factory: Builds the scheduler thread from ``(target, name)``.
        drop_actions_on_queue_exhaustion: Drop instead of blocking when the
            ingest queue is full.
        dropped_action_handler: Called with each point dropped on exhaustion.
        retry_classifier: Maps a delivery exception to retryable or not.
    """

    actions: int = DEFAULT_BATCH_ACTIONS_LIMIT
    flush_interval: int = DEFAULT_BATCH_INTERVAL_DURATION
    jitter_interval: int = DEFAULT_JITTER_INTERVAL_DURATION
    interval_unit: TimeUnit = TimeUnit.MILLISECONDS
    buffer_limit: int = DEFAULT_BUFFER_LIMIT
    consistency: ConsistencyLevel = ConsistencyLevel.ONE
    precision: TimeUnit = TimeUnit.NANOSECONDS
    exception_handler: ExceptionHandler = _ignore_lost_points
    thread_factory: ThreadFactory = default_thread_factory
    drop_actions_on_queue_exhaustion: bool = False
    dropped_action_handler: DroppedActionHandler = _ignore_dropped_point
    retry_classifier: Classifier = default_retry_classifier

    def __post_init__(self) -> None:
        if self.actions <= 0:
            raise ValueError("actions must be > 0")
        if self.flush_interval <= 0:
            raise ValueError("flush_interval must be > 0")
        if self.jitter_interval < 0:
            raise ValueError("jitter_interval must be >= 0")
        if self.buffer_limit < 0:
            raise ValueError("buffer_limit must be >= 0")

    def with_(self, **changes: Any) -> "BatchOptions":
        return dataclasses.replace(self, **changes)

    @property
    def flush_interval_seconds(self) -> float:
        return self.interval_unit.to_seconds(self.flush_interval)

    @property
    def jitter_interval_seconds(self) -> float:
        return self.interval_unit.to_seconds(self.jitter_interval)

    @property
    def retries_enabled(self) -> bool:
        return self.buffer_limit > self.actions


DEFAULT_OPTIONS = BatchOptions()
