from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .errors import TransientDeliveryError
from .types import Batch, DestinationKey


class InMemoryTransport:
    """
    Transport that keeps delivered batches in memory.

    Useful for dry runs and demos. ``fail_first`` makes the first N calls
    raise the exception produced by ``error_factory`` (a retryable
    TransientDeliveryError by default).
    """

    def __init__(
        self,
        *,
        fail_first: int = 0,
        error_factory: Optional[Callable[[Batch[Any]], BaseException]] = None,
    ):
        self._fail_remaining = fail_first
        self._error_factory = error_factory or (
            lambda batch: TransientDeliveryError(f"simulated failure for {batch.key}")
        )
        self._lock = threading.Lock()
        self.batches: List[Batch[Any]] = []
        self.calls = 0

    def write(self, batch: Batch[Any]) -> None:
        with self._lock:
            self.calls += 1
            if self._fail_remaining > 0:
                self._fail_remaining -= 1
                raise self._error_factory(batch)
            self.batches.append(Batch(batch.key, batch.consistency, batch.precision, list(batch.points)))
        logger.debug(f"InMemoryTransport stored {len(batch)} point(s) for {batch.key}")

    @property
    def points(self) -> List[Any]:
        with self._lock:
            return [p for b in self.batches for p in b.points]

    def points_by_key(self) -> Dict[DestinationKey, List[Any]]:
        out: Dict[DestinationKey, List[Any]] = {}
        with self._lock:
            for b in self.batches:
                out.setdefault(b.key, []).extend(b.points)
        return out
