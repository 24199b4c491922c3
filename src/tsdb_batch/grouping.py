from __future__ import annotations

from typing import Any, Dict, List, Sequence, Tuple

from .types import Batch, BatchEntry, ConsistencyLevel, DestinationKey, Entry, PointEntry, TimeUnit


def group_entries(
    entries: Sequence[Entry],
    consistency: ConsistencyLevel = ConsistencyLevel.ONE,
    precision: TimeUnit = TimeUnit.NANOSECONDS,
) -> List[Batch[Any]]:
    """
    Partition drained entries into per-destination batches.

    Points for the same key land in one batch in submission order. A
    pre-built batch is passed through as its own batch and closes the open
    batch for its key, so points written after it for that key follow it.
    Output order is the order in which batches were opened.
    """
    out: List[Batch[Any]] = []
    open_batches: Dict[Tuple[DestinationKey, ConsistencyLevel], Batch[Any]] = {}

    for entry in entries:
        if isinstance(entry, PointEntry):
            slot = (entry.key, consistency)
            batch = open_batches.get(slot)
            if batch is None:
                batch = Batch(key=entry.key, consistency=consistency, precision=precision)
                open_batches[slot] = batch
                out.append(batch)
            batch.add(entry.point)
        elif isinstance(entry, BatchEntry):
            if not entry.batch.points:
                continue
            open_batches.pop((entry.batch.key, consistency), None)
            out.append(entry.batch)
        else:
            raise TypeError(f"unsupported entry type: {type(entry).__name__}")

    return out
