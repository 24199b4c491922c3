"""
Pytest configuration and fixtures for tsdb-batch-writer.

Provides fake transports, an exception-handler recorder and a polling
helper for assertions on the background scheduler thread.
"""

import threading
import time
import uuid
from typing import Any, Callable, List, Optional, Tuple

import pytest

from tsdb_batch import Batch
from tsdb_batch.metrics import BatchMetrics


class ScriptedTransport:
    """Transport whose n-th call raises ``script[n]`` (None = success); succeeds afterwards."""

    def __init__(self, script: Optional[List[Optional[BaseException]]] = None):
        self._script = list(script or [])
        self._lock = threading.Lock()
        self.attempts: List[Tuple[Any, List[Any]]] = []
        self.delivered: List[Tuple[Any, List[Any]]] = []

    def then(self, *outcomes: Optional[BaseException]) -> None:
        """Append outcomes for subsequent calls."""
        with self._lock:
            self._script.extend(outcomes)

    def write(self, batch: Batch) -> None:
        with self._lock:
            self.attempts.append((batch.key, list(batch.points)))
            outcome = self._script.pop(0) if self._script else None
            if outcome is not None:
                raise outcome
            self.delivered.append((batch.key, list(batch.points)))

    @property
    def points(self) -> List[Any]:
        with self._lock:
            return [p for _, pts in self.delivered for p in pts]


class LossRecorder:
    """Exception handler that records every (points, exc) it receives."""

    def __init__(self):
        self._lock = threading.Lock()
        self.calls: List[Tuple[List[Any], BaseException]] = []

    def __call__(self, points: List[Any], exc: BaseException) -> None:
        with self._lock:
            self.calls.append((list(points), exc))

    @property
    def points(self) -> List[Any]:
        with self._lock:
            return [p for pts, _ in self.calls for p in pts]


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def losses():
    return LossRecorder()


@pytest.fixture
def metrics():
    return BatchMetrics(f"test-{uuid.uuid4().hex[:8]}")


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    """Poll ``predicate`` until it holds or ``timeout`` seconds pass."""

    def _wait(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait


@pytest.fixture
def scripted() -> Callable[..., ScriptedTransport]:
    """Factory: ``scripted(exc, None, exc)`` builds a transport failing on those calls."""

    def _make(*outcomes: Optional[BaseException]) -> ScriptedTransport:
        return ScriptedTransport(list(outcomes))

    return _make
