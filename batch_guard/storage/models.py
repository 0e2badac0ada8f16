"""
Data models for the checkpoint layer.

Defines work-unit identity and terminal checkpoint records.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Tuple, Union

KeyPart = Union[str, int]


class UnitStatus(Enum):
    """Terminal status of a work unit in a checkpoint store."""
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class WorkUnitKey:
    """Composite identity of a work unit, e.g. (district, question, batch_index).

    Compared and hashed on the full tuple. Persisted as a JSON array so a
    component containing any delimiter cannot collide with another key.
    """
    parts: Tuple[KeyPart, ...]

    def __post_init__(self):
        """Validate key parts."""
        if not self.parts:
            raise ValueError("work unit key cannot be empty")
        for part in self.parts:
            if isinstance(part, bool) or not isinstance(part, (str, int)):
                raise ValueError(f"work unit key parts must be str or int, got {part!r}")

    @classmethod
    def of(cls, *parts: KeyPart) -> "WorkUnitKey":
        return cls(tuple(parts))

    def encode(self) -> str:
        return json.dumps(list(self.parts), ensure_ascii=False)

    @classmethod
    def decode(cls, encoded: str) -> "WorkUnitKey":
        parts = json.loads(encoded)
        if not isinstance(parts, list):
            raise ValueError(f"Invalid work unit key: {encoded!r}")
        return cls(tuple(parts))

    def __str__(self) -> str:
        return " / ".join(str(p) for p in self.parts)


@dataclass(frozen=True)
class CheckpointRecord:
    """Immutable record of a work unit's terminal outcome.

    Once written, a record is never modified; its presence alone prevents
    the unit from being processed again.
    """
    key: WorkUnitKey
    status: UnitStatus
    cost: int = 0
    completed_at: Optional[datetime] = None


class OutcomeStatus(Enum):
    """What happened to a work unit during one driver run."""
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED_AS_DONE = "skipped_as_done"
    SKIPPED_FAILED = "skipped_failed"


@dataclass(frozen=True)
class UnitOutcome:
    """Result of one work unit as surfaced to the caller and output sink.

    ``value`` is the work function's output, a cached output for units
    completed in an earlier run, or None. ``error`` holds the failure
    message for FAILED units.
    """
    key: WorkUnitKey
    status: OutcomeStatus
    value: Any = None
    cost: int = 0
    error: Optional[str] = None
