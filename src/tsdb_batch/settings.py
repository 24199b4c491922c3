"""
Environment-driven batching settings.

Reads ``TSDB_BATCH_*`` variables (or a ``.env`` file) and turns them into
an immutable :class:`BatchOptions`. Callbacks cannot come from the
environment, so they are supplied to :meth:`BatchSettings.to_options`.
"""

from __future__ import annotations

from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .options import (
    DEFAULT_BATCH_ACTIONS_LIMIT,
    DEFAULT_BATCH_INTERVAL_DURATION,
    DEFAULT_BUFFER_LIMIT,
    DEFAULT_JITTER_INTERVAL_DURATION,
    BatchOptions,
)
from .types import ConsistencyLevel, TimeUnit


class BatchSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TSDB_BATCH_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    actions: int = DEFAULT_BATCH_ACTIONS_LIMIT
    flush_interval: int = DEFAULT_BATCH_INTERVAL_DURATION
    jitter_interval: int = DEFAULT_JITTER_INTERVAL_DURATION
    interval_unit: TimeUnit = TimeUnit.MILLISECONDS
    buffer_limit: int = DEFAULT_BUFFER_LIMIT
    consistency: ConsistencyLevel = ConsistencyLevel.ONE
    precision: TimeUnit = TimeUnit.NANOSECONDS
    drop_actions_on_queue_exhaustion: bool = False

    @field_validator("actions", "flush_interval")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("jitter_interval", "buffer_limit")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("consistency", mode="before")
    @classmethod
    def _lower_consistency(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    def to_options(self, **callbacks: Any) -> BatchOptions:
        """Build options; ``callbacks`` may set exception_handler, thread_factory, etc."""
        return BatchOptions(**self.model_dump(), **callbacks)
