"""
Demo script for BatchProcessor.

Shows threshold and periodic flushes, retry buffering against a flaky
transport, and the final drain on shutdown.
"""

import random
import threading
import time
from typing import Any, List

from loguru import logger

from tsdb_batch import Batch, BatchOptions, BatchProcessor, DatabaseKey, TransientDeliveryError


class FlakyTransport:
    """Fails roughly one call in four with a retryable error."""

    def __init__(self, failure_rate: float = 0.25):
        self.failure_rate = failure_rate
        self.points = 0

    def write(self, batch: Batch) -> None:
        time.sleep(0.005)
        if random.random() < self.failure_rate:
            raise TransientDeliveryError("simulated 503")
        self.points += len(batch)
        logger.info(f"FlakyTransport wrote {len(batch)} points to {batch.key}")


def on_lost(points: List[Any], exc: BaseException) -> None:
    logger.warning(f"⚠️  Lost {len(points)} points: {type(exc).__name__}: {exc}")


def main():
    transport = FlakyTransport()
    processor = BatchProcessor(
        transport,
        BatchOptions(
            actions=200,
            flush_interval=100,
            jitter_interval=20,
            buffer_limit=2_000,
            exception_handler=on_lost,
        ),
        processor_id="demo",
    )
    logger.info("🚀 Starting batch demo - 4 producers x 2,500 points")

    def produce(n: int) -> None:
        key = DatabaseKey(f"sensors_{n}", "autogen")
        for i in range(2_500):
            processor.write({"sensor": n, "seq": i, "value": random.random()}, key)

    threads = [threading.Thread(target=produce, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    while any(t.is_alive() for t in threads):
        h = processor.health()
        logger.info(
            f"Queue: {h.queue_size}/{h.queue_capacity} | "
            f"Backlog: {h.backlog_points}/{h.buffer_limit} ({h.backlog_batches} batches)"
        )
        time.sleep(0.2)

    processor.flush_and_shutdown()
    logger.info(f"✅ Done - transport received {transport.points} points")


if __name__ == "__main__":
    main()
