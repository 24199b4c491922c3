"""
Custom exceptions for the batching write path.

Every delivery error carries a ``retryable`` flag that the retry-capable
writer consults through :func:`default_retry_classifier`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, List, Tuple

if TYPE_CHECKING:
    from .types import Batch


class TsdbWriteError(Exception):
    """Base error for the write path. Unclassified failures are worth a retry."""

    retryable = True


class TransientDeliveryError(TsdbWriteError):
    """Temporary server or network condition; retried by the retry-capable writer."""

    retryable = True


class PermanentDeliveryError(TsdbWriteError):
    """The write can never succeed as-is; points are dropped and reported."""

    retryable = False


class DatabaseNotFoundError(PermanentDeliveryError):
    pass


class PointsBeyondRetentionPolicyError(PermanentDeliveryError):
    pass


class FieldTypeConflictError(PermanentDeliveryError):
    pass


class UnableToParseError(PermanentDeliveryError):
    pass


class HintedHandoffQueueNotEmptyError(PermanentDeliveryError):
    pass


class CacheMaxMemorySizeExceededError(TransientDeliveryError):
    pass


class BufferOverrunError(PermanentDeliveryError):
    """Raised (reported, never thrown) when the retry backlog evicts old batches."""

    def __init__(self, capacity: int):
        super().__init__(f"Retry buffer overrun, current capacity: {capacity}")
        self.capacity = capacity


class SchedulerFault(TsdbWriteError):
    """Unexpected exception escaping a flush cycle."""

    retryable = False


class UndeliveredBatchesError(TsdbWriteError):
    """One or more batches failed in a one-shot flush; their points are lost."""

    retryable = False

    def __init__(self, failures: List[Tuple["Batch[Any]", BaseException]]):
        points = sum(len(b) for b, _ in failures)
        super().__init__(f"{len(failures)} batch(es) / {points} point(s) could not be delivered")
        self.failures = failures


class ProcessorClosedError(TsdbWriteError):
    """Write attempted after flush_and_shutdown()."""

    retryable = False


class BatchAlreadyEnabledError(TsdbWriteError):
    retryable = False


_SERVER_ERRORS = (
    ("database not found", DatabaseNotFoundError),
    ("points beyond retention policy", PointsBeyondRetentionPolicyError),
    ("field type conflict", FieldTypeConflictError),
    ("unable to parse", UnableToParseError),
    ("hinted handoff queue not empty", HintedHandoffQueueNotEmptyError),
    ("cache-max-memory-size exceeded", CacheMaxMemorySizeExceededError),
)


def map_server_error(message: str) -> TsdbWriteError:
    """Map a server error string onto the taxonomy."""
    for needle, cls in _SERVER_ERRORS:
        if needle in message:
            return cls(message)
    return TsdbWriteError(message)


def default_retry_classifier(exc: BaseException) -> bool:
    """
    Return True if ``exc`` is worth retrying.

    Errors from this module know their own answer; anything else (timeouts,
    connection resets, unexpected exceptions) is treated as transient.
    """
    return bool(getattr(exc, "retryable", True))
