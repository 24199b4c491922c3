"""
Unit tests for BatchProcessor: scheduling, strategy wiring and shutdown.
"""

import threading
import time

import pytest
from prometheus_client import REGISTRY

from tsdb_batch import (
    Batch,
    BatchOptions,
    BatchProcessor,
    ConsistencyLevel,
    DatabaseKey,
    InMemoryTransport,
    OneShotBatchWriter,
    ProcessorClosedError,
    RetryCapableBatchWriter,
    SchedulerFault,
    TransientDeliveryError,
    UdpKey,
)
from tsdb_batch.errors import DatabaseNotFoundError

DB = DatabaseKey("telemetry", "autogen")

# long enough that the periodic timer never fires during a test
NEVER = 60_000


@pytest.fixture
def processors():
    created = []
    yield created
    for p in created:
        p.flush_and_shutdown(timeout=1.0)


def make(processors, transport, **opts):
    start = opts.pop("start", True)
    p = BatchProcessor(transport, BatchOptions(**opts), start=start)
    processors.append(p)
    return p


def test_threshold_triggers_flush_without_waiting_for_interval(processors, transport, wait_until):
    p = make(processors, transport, actions=5, flush_interval=NEVER)
    for i in range(5):
        p.write(i, DB)

    assert wait_until(lambda: transport.points == [0, 1, 2, 3, 4])


def test_periodic_flush_delivers_below_threshold(processors, transport, wait_until):
    p = make(processors, transport, actions=100, flush_interval=50)
    for i in range(3):
        p.write(i, DB)

    assert wait_until(lambda: transport.points == [0, 1, 2])


def test_manual_flush_is_synchronous(processors, transport):
    p = make(processors, transport, actions=100, flush_interval=NEVER)
    for i in range(3):
        p.write(i, DB)
    p.flush()

    assert transport.points == [0, 1, 2]


def test_points_grouped_by_destination(processors, transport):
    p = make(processors, transport, actions=100, flush_interval=NEVER, consistency=ConsistencyLevel.ALL)
    other = UdpKey(8089)
    for i in range(6):
        p.write(i, DB if i % 2 == 0 else other)
    p.flush()

    assert transport.delivered == [(DB, [0, 2, 4]), (other, [1, 3, 5])]


def test_write_batch_goes_through_same_path(processors, transport):
    p = make(processors, transport, actions=100, flush_interval=NEVER)
    p.write_batch(Batch(DB, ConsistencyLevel.QUORUM, points=["a", "b"]))
    p.flush()

    assert transport.delivered == [(DB, ["a", "b"])]


def test_no_failure_liveness_one_shot(processors, transport):
    """Concurrent producers, no failures: every point delivered exactly once."""
    p = make(processors, transport, actions=50, flush_interval=20, buffer_limit=0)
    assert isinstance(p.writer, OneShotBatchWriter)

    def produce(base):
        for i in range(250):
            p.write(base + i, DatabaseKey(f"db{base}"))

    threads = [threading.Thread(target=produce, args=(n * 1000,)) for n in range(4)]
    for t in threads:
        t.start()
    for _ in range(5):
        p.flush()  # manual flushes racing the scheduler
    for t in threads:
        t.join(5.0)
    p.flush_and_shutdown()

    delivered = transport.points
    assert len(delivered) == 1000
    assert sorted(delivered) == sorted(n * 1000 + i for n in range(4) for i in range(250))
    for key, points in transport.delivered:
        assert all(pt // 1000 == int(key.database[2:]) // 1000 for pt in points)


def test_scenario_retry_with_small_buffer(processors, wait_until):
    """
    actions=4, buffer_limit=10, and the first transport call fails once (retryable)
    before every later call succeeds: 8 points land, the last 2 after one more flush.
    """
    transport = InMemoryTransport(fail_first=1)
    p = make(processors, transport, actions=4, buffer_limit=10, flush_interval=NEVER)
    assert isinstance(p.writer, RetryCapableBatchWriter)

    for i in range(10):
        p.write(i, DB)

    assert wait_until(lambda: len(transport.points) == 8)
    time.sleep(0.1)
    assert len(transport.points) == 8

    p.flush()
    assert transport.points == list(range(10))


def test_scenario_one_shot_loses_points_and_reports(processors, losses, wait_until):
    """actions=8, buffer_limit=3 selects one-shot; a retryable failure still loses the points."""
    transport = InMemoryTransport(fail_first=1)
    p = make(
        processors,
        transport,
        actions=8,
        buffer_limit=3,
        flush_interval=NEVER,
        exception_handler=losses,
    )
    assert isinstance(p.writer, OneShotBatchWriter)

    for i in range(8):
        p.write(i, DB)

    assert wait_until(lambda: len(losses.calls) >= 1)
    p.flush()
    assert transport.points == []
    assert sorted(losses.points) == list(range(8))
    assert isinstance(losses.calls[0][1], TransientDeliveryError)


def test_scenario_first_flush_respects_interval_and_jitter(processors):
    """flush=1000ms, jitter=125ms: the first flush happens within [1000, 1125] ms."""
    flushed_at = []
    done = threading.Event()

    class Clocked:
        def write(self, batch):
            flushed_at.append(time.monotonic())
            done.set()

    t0 = time.monotonic()
    p = make(processors, Clocked(), actions=100, flush_interval=1000, jitter_interval=125)
    p.write(1, DB)

    assert done.wait(3.0)
    elapsed = flushed_at[0] - t0
    assert 0.99 <= elapsed <= 1.125 + 0.15


def test_jittered_delay_bounds(processors, transport):
    p = make(processors, transport, flush_interval=1000, jitter_interval=125, start=False)
    delays = [p._next_delay() for _ in range(200)]
    assert all(1.0 <= d <= 1.125 for d in delays)
    assert len(set(delays)) > 1


def test_scheduler_survives_faults(processors, transport, losses, wait_until):
    """An exception escaping a cycle is reported as SchedulerFault; the loop keeps running."""
    p = make(
        processors,
        transport,
        actions=1,
        buffer_limit=10,
        flush_interval=NEVER,
        exception_handler=losses,
    )
    # an unhashable key breaks grouping before anything is delivered
    p.write("lost", ["not", "hashable"])
    assert wait_until(lambda: len(losses.calls) == 1)
    points, fault = losses.calls[0]
    assert points == ["lost"]
    assert isinstance(fault, SchedulerFault)
    assert isinstance(fault.__cause__, TypeError)

    p.write("kept", DB)
    assert wait_until(lambda: transport.points == ["kept"])
    assert p.is_running


def test_exception_handler_cannot_reenter_flush(processors, scripted):
    """flush() from inside the handler raises instead of deadlocking on the flush lock."""
    refused = []

    def handler(points, exc):
        try:
            p.flush()
        except RuntimeError as err:
            refused.append(err)

    transport = scripted(DatabaseNotFoundError("database not found"))
    p = make(
        processors, transport, actions=100, buffer_limit=1000, flush_interval=NEVER, exception_handler=handler
    )
    p.write(1, DB)
    p.flush()
    assert len(refused) == 1

    p.write(2, DB)
    p.flush()
    assert transport.points == [2]


class EveryThirdCallFails:
    """Retryable failure on every third transport call."""

    def __init__(self):
        self._lock = threading.Lock()
        self.calls = 0
        self.delivered = []

    def write(self, batch):
        with self._lock:
            self.calls += 1
            if self.calls % 3 == 0:
                raise TransientDeliveryError("every third call")
            self.delivered.append((batch.key, list(batch.points)))


def test_manual_flushes_race_scheduler_over_retry_backlog(processors, losses):
    """
    Several threads call flush() while the scheduler runs against a flaky
    transport: every point is delivered once, in per-key order, or reported,
    and the backlog never exceeds its capacity.
    """
    transport = EveryThirdCallFails()
    buffer_limit = 40
    p = make(
        processors,
        transport,
        actions=10,
        buffer_limit=buffer_limit,
        flush_interval=5,
        exception_handler=losses,
    )
    assert isinstance(p.writer, RetryCapableBatchWriter)

    keys = [DatabaseKey(f"db{n}") for n in range(3)]
    stop = threading.Event()
    over_capacity = []

    def produce(n):
        for i in range(300):
            p.write(n * 1000 + i, keys[n])

    def flusher():
        while not stop.is_set():
            p.flush()
            time.sleep(0.001)

    def watch():
        while not stop.is_set():
            used = p.writer.backlog_points
            if used > buffer_limit:
                over_capacity.append(used)
            time.sleep(0.001)

    producers = [threading.Thread(target=produce, args=(n,)) for n in range(3)]
    helpers = [threading.Thread(target=flusher) for _ in range(3)] + [threading.Thread(target=watch)]
    for t in producers + helpers:
        t.start()
    for t in producers:
        t.join(10.0)
    stop.set()
    for t in helpers:
        t.join(5.0)
    p.flush_and_shutdown()

    delivered = [pt for _, pts in transport.delivered for pt in pts]
    assert len(delivered) == len(set(delivered))
    assert sorted(delivered + losses.points) == sorted(n * 1000 + i for n in range(3) for i in range(300))
    for key in keys:
        per_key = [pt for k, pts in transport.delivered if k == key for pt in pts]
        assert per_key == sorted(per_key)
    assert over_capacity == []


def test_flush_and_shutdown(processors, transport):
    p = make(processors, transport, actions=100, flush_interval=NEVER)
    p.write(1, DB)
    p.flush_and_shutdown()

    assert transport.points == [1]
    assert not p.is_running
    with pytest.raises(ProcessorClosedError):
        p.write(2, DB)
    p.flush_and_shutdown()  # idempotent


def test_shutdown_retries_backlog_once_more(processors, losses):
    transport = InMemoryTransport(fail_first=1)
    p = make(
        processors, transport, actions=10, buffer_limit=100, flush_interval=NEVER, exception_handler=losses
    )
    for i in range(3):
        p.write(i, DB)
    p.flush()
    assert p.health().backlog_points == 3

    p.flush_and_shutdown()
    assert transport.points == [0, 1, 2]
    assert losses.calls == []


def test_producer_blocked_during_shutdown_is_delivered_or_reported(processors, transport, losses):
    """A put that completes after the final drain is reported, never silently left queued."""
    p = make(
        processors, transport, actions=2, flush_interval=NEVER, exception_handler=losses, start=False
    )
    p.write(1, DB)
    p.write(2, DB)

    producer = threading.Thread(target=p.write, args=(3, DB), daemon=True)
    producer.start()
    time.sleep(0.05)
    assert producer.is_alive()

    p.flush_and_shutdown()
    producer.join(1.0)
    assert not producer.is_alive()

    assert transport.points[:2] == [1, 2]
    assert sorted(transport.points + losses.points) == [1, 2, 3]
    for _, exc in losses.calls:
        assert isinstance(exc, ProcessorClosedError)
    assert p.health().queue_size == 0


def test_shutdown_releases_metric_labels(processors, transport):
    p = make(processors, transport, actions=100, flush_interval=NEVER)
    p.write(1, DB)
    labels = {"processor_id": p.processor_id}
    assert REGISTRY.get_sample_value("tsdb_batch_points_enqueued_total", labels) == 1.0

    p.flush_and_shutdown()
    assert REGISTRY.get_sample_value("tsdb_batch_points_enqueued_total", labels) is None


def test_full_queue_blocks_producer_until_flush(processors, transport):
    p = make(processors, transport, actions=2, flush_interval=NEVER, start=False)

    producer = threading.Thread(target=lambda: [p.write(i, DB) for i in range(3)], daemon=True)
    producer.start()
    time.sleep(0.05)
    assert producer.is_alive()

    p.flush()
    producer.join(1.0)
    assert not producer.is_alive()
    p.flush()
    assert transport.points == [0, 1, 2]


def test_drop_actions_on_queue_exhaustion(processors, transport):
    dropped = []
    p = make(
        processors,
        transport,
        actions=2,
        flush_interval=NEVER,
        drop_actions_on_queue_exhaustion=True,
        dropped_action_handler=dropped.append,
        start=False,
    )

    assert p.write(1, DB)
    assert p.write(2, DB)
    assert not p.write(3, DB)
    assert dropped == [3]

    p.flush()
    assert transport.points == [1, 2]


def test_health(processors, transport):
    p = make(processors, transport, actions=10, buffer_limit=50, flush_interval=NEVER)
    p.write(1, DB)
    h = p.health()

    assert h.running
    assert h.strategy == "retry"
    assert h.queue_size == 1
    assert h.queue_capacity == 10
    assert h.backlog_points == 0
    assert h.buffer_limit == 50
