"""Central Enum definitions for pricing sync states.

These replace scattered string literals to ensure consistency across
DB models, schemas, and business logic. Columns store the ``.value`` strings
so conditional UPDATEs and partial indexes can compare against plain literals.
"""
from __future__ import annotations
import enum


class JobQueueStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def active(cls) -> tuple[str, ...]:
        return (cls.QUEUED.value, cls.RUNNING.value)


class JobRunStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"
    PREFLIGHT_CEILING = "preflight_ceiling"

    @classmethod
    def terminal(cls) -> tuple[str, ...]:
        return (
            cls.COMPLETED.value,
            cls.ERROR.value,
            cls.CANCELLED.value,
            cls.PREFLIGHT_CEILING.value,
        )


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


__all__ = [
    "JobQueueStatus",
    "JobRunStatus",
    "CircuitState",
]
