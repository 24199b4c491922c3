from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generic, List, Optional, Protocol, TypeVar, Union

P = TypeVar("P")


class ConsistencyLevel(str, Enum):
    """Server-side write acknowledgment requirement."""

    ONE = "one"
    ANY = "any"
    ALL = "all"
    QUORUM = "quorum"


class TimeUnit(str, Enum):
    """Units for flush intervals and point precision."""

    NANOSECONDS = "ns"
    MICROSECONDS = "u"
    MILLISECONDS = "ms"
    SECONDS = "s"
    MINUTES = "m"
    HOURS = "h"

    def to_seconds(self, value: float) -> float:
        return value * _SECONDS_PER_UNIT[self]


_SECONDS_PER_UNIT = {
    TimeUnit.NANOSECONDS: 1e-9,
    TimeUnit.MICROSECONDS: 1e-6,
    TimeUnit.MILLISECONDS: 1e-3,
    TimeUnit.SECONDS: 1.0,
    TimeUnit.MINUTES: 60.0,
    TimeUnit.HOURS: 3600.0,
}


# --------------------------- destination keys


@dataclass(frozen=True)
class DatabaseKey:
    """Networked write target: database plus retention policy (None = server default)."""

    database: str
    retention_policy: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.database:
            raise ValueError("database must be a non-empty string")

    def __str__(self) -> str:
        return f"{self.database}/{self.retention_policy or 'default'}"


@dataclass(frozen=True)
class UdpKey:
    """UDP write target."""

    port: int

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ValueError("UDP port should be >= 0 and <= 65535")

    def __str__(self) -> str:
        return f"udp:{self.port}"


DestinationKey = Union[DatabaseKey, UdpKey]


# --------------------------- batches


@dataclass
class Batch(Generic[P]):
    """Ordered points sharing one destination key and consistency level."""

    key: DestinationKey
    consistency: ConsistencyLevel = ConsistencyLevel.ONE
    precision: TimeUnit = TimeUnit.NANOSECONDS
    points: List[P] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.points)

    def add(self, point: P) -> None:
        self.points.append(point)

    def compatible_with(self, other: "Batch[P]") -> bool:
        return (
            self.key == other.key
            and self.consistency == other.consistency
            and self.precision == other.precision
        )

    def merge_in(self, other: "Batch[P]") -> bool:
        """Append ``other``'s points when both target the same place; False otherwise."""
        if not self.compatible_with(other):
            return False
        self.points.extend(other.points)
        return True


# --------------------------- queue entries (tagged variant)


@dataclass(frozen=True)
class PointEntry(Generic[P]):
    point: P
    key: DestinationKey

    @property
    def points(self) -> List[P]:
        return [self.point]


@dataclass(frozen=True)
class BatchEntry(Generic[P]):
    batch: Batch[P]

    @property
    def key(self) -> DestinationKey:
        return self.batch.key

    @property
    def points(self) -> List[P]:
        return list(self.batch.points)


Entry = Union[PointEntry[Any], BatchEntry[Any]]


# --------------------------- collaborator contracts


class Transport(Protocol[P]):
    """Delivers one batch to the server. Raises on failure."""

    def write(self, batch: Batch[P]) -> None: ...


ExceptionHandler = Callable[[List[Any], BaseException], None]
DroppedActionHandler = Callable[[Any], None]
Classifier = Callable[[BaseException], bool]
