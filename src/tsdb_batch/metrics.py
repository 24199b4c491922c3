"""
Prometheus metrics for the batching write path.

Registered on the global prometheus_client REGISTRY at import time.
"""

import threading
from typing import Set, Tuple

from prometheus_client import Counter, Gauge, Histogram
from prometheus_client.metrics import MetricWrapperBase

POINTS_ENQUEUED_TOTAL = Counter(
    "tsdb_batch_points_enqueued_total",
    "Points accepted into the ingest queue",
    ["processor_id"],
)

POINTS_DELIVERED_TOTAL = Counter(
    "tsdb_batch_points_delivered_total",
    "Points acknowledged by the transport",
    ["processor_id", "strategy"],
)

POINTS_LOST_TOTAL = Counter(
    "tsdb_batch_points_lost_total",
    "Points permanently lost, by reason",
    ["processor_id", "reason"],  # permanent | overrun | one_shot | queue_full | shutdown
)

FLUSH_CYCLES_TOTAL = Counter(
    "tsdb_batch_flush_cycles_total",
    "Flush cycles executed, by trigger",
    ["processor_id", "trigger"],  # periodic | threshold | manual | shutdown
)

SCHEDULER_FAULTS_TOTAL = Counter(
    "tsdb_batch_scheduler_faults_total",
    "Exceptions caught at the top of a flush cycle",
    ["processor_id"],
)

RETRY_BACKLOG_POINTS = Gauge(
    "tsdb_batch_retry_backlog_points",
    "Points currently held in the retry backlog",
    ["processor_id"],
)

DELIVERY_LATENCY_MS = Histogram(
    "tsdb_batch_delivery_latency_ms",
    "Single transport attempt latency in milliseconds",
    ["processor_id", "outcome"],
    buckets=[1, 2.5, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000],
)


class BatchMetrics:
    """Metric children bound to one processor id."""

    def __init__(self, processor_id: str):
        self.processor_id = processor_id
        self._children: Set[Tuple[MetricWrapperBase, Tuple[str, ...]]] = set()
        self._lock = threading.Lock()

    def _child(self, metric: MetricWrapperBase, *labels: str):
        values = (self.processor_id, *labels)
        with self._lock:
            self._children.add((metric, values))
        return metric.labels(*values)

    def enqueued(self, n: int = 1) -> None:
        self._child(POINTS_ENQUEUED_TOTAL).inc(n)

    def delivered(self, strategy: str, n: int) -> None:
        self._child(POINTS_DELIVERED_TOTAL, strategy).inc(n)

    def lost(self, reason: str, n: int) -> None:
        if n:
            self._child(POINTS_LOST_TOTAL, reason).inc(n)

    def flush_cycle(self, trigger: str) -> None:
        self._child(FLUSH_CYCLES_TOTAL, trigger).inc()

    def scheduler_fault(self) -> None:
        self._child(SCHEDULER_FAULTS_TOTAL).inc()

    def backlog(self, points: int) -> None:
        self._child(RETRY_BACKLOG_POINTS).set(points)

    def attempt(self, outcome: str, elapsed_ms: float) -> None:
        self._child(DELIVERY_LATENCY_MS, outcome).observe(elapsed_ms)

    def release(self) -> None:
        """Remove every label set this processor created from the registry."""
        with self._lock:
            children, self._children = self._children, set()
        for metric, labels in children:
            try:
                metric.remove(*labels)
            except KeyError:
                # another processor with the same id already removed it
                continue
