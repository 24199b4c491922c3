from __future__ import annotations

import queue
import threading
from typing import Callable, Generic, List, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


class IngestQueue(Generic[T]):
    """
    Thread-safe staging queue between producers and the flush scheduler.

    Bounded by ``capacity``. A full queue blocks the producer unless
    ``drop_on_full`` is set, in which case the entry is handed to
    ``on_drop`` and discarded. ``on_threshold`` fires after any put that
    leaves ``size >= threshold``.
    """

    def __init__(
        self,
        capacity: int,
        *,
        threshold: Optional[int] = None,
        drop_on_full: bool = False,
        on_threshold: Optional[Callable[[], None]] = None,
        on_drop: Optional[Callable[[T], None]] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity = capacity
        self._q: queue.Queue[T] = queue.Queue(maxsize=capacity)
        self._threshold = threshold if threshold is not None else capacity
        self._drop_on_full = drop_on_full
        self._on_threshold = on_threshold
        self._on_drop = on_drop

        # drain() must not interleave with another drain
        self._drain_lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return self._q.qsize()

    def put(self, item: T, timeout: Optional[float] = None) -> bool:
        """Enqueue ``item``. Returns False if it was dropped because the queue was full."""
        if self._drop_on_full:
            try:
                self._q.put_nowait(item)
            except queue.Full:
                logger.warning(f"Ingest queue full ({self._capacity}), dropping entry")
                if self._on_drop:
                    self._on_drop(item)
                return False
        else:
            self._q.put(item, timeout=timeout)

        if self._on_threshold and self._q.qsize() >= self._threshold:
            self._on_threshold()
        return True

    def drain(self) -> List[T]:
        """Remove and return every entry queued at this moment, oldest first."""
        with self._drain_lock:
            # entries arriving mid-drain wait for the next cycle
            return [self._q.get_nowait() for _ in range(self._q.qsize())]
