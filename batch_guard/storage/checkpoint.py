"""
Checkpoint store for resumable batch jobs.

Persists which work units completed or permanently failed, plus job
counters, in a single JSON document:

    {"completed": {"<key>": {"cost": 123, "timestamp": "..."}},
     "failed": ["<key>", ...],
     "stats": {...}}

Writes go to a temporary file that atomically replaces the old document,
so a reader in another process never sees a partial write.
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from ..core.stats import JobStats
from .models import CheckpointRecord, UnitStatus, WorkUnitKey

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Durable map of work-unit keys to terminal outcomes.

    Completed and failed keys are kept in two disjoint collections and are
    only ever looked up by the full composite key.
    """

    def __init__(self, path: str):
        """Initialize an empty store bound to ``path``. Call load() to restore."""
        self.path = Path(path)
        self._completed: Dict[WorkUnitKey, CheckpointRecord] = {}
        self._failed: Set[WorkUnitKey] = set()
        self.stats: Dict[str, Any] = {}

    def load(self) -> bool:
        """Restore state from disk.

        A missing or unreadable file leaves the store empty.

        Returns:
            True if a checkpoint was loaded
        """
        self._completed = {}
        self._failed = set()
        self.stats = {}

        if not self.path.exists():
            logger.info("No previous checkpoint found at %s", self.path)
            return False

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            completed, failed, stats = self._decode(data)
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Failed to load checkpoint %s, starting empty: %s", self.path, e)
            return False

        self._completed = completed
        self._failed = failed
        self.stats = stats
        logger.info(
            "Checkpoint loaded: %d completed, %d failed",
            len(self._completed), len(self._failed)
        )
        return True

    def flush(self, stats: Optional[Dict[str, Any]] = None) -> None:
        """Durably write the current state, replacing the previous document.

        Args:
            stats: Job counters to persist with the records
        """
        if stats is not None:
            self.stats = dict(stats)

        document = {
            "completed": {
                key.encode(): {
                    "cost": record.cost,
                    "timestamp": record.completed_at.isoformat() if record.completed_at else None,
                }
                for key, record in self._completed.items()
            },
            "failed": [key.encode() for key in self._failed],
            "stats": self.stats,
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def is_completed(self, key: WorkUnitKey) -> bool:
        return key in self._completed

    def is_failed(self, key: WorkUnitKey) -> bool:
        return key in self._failed

    def record(self, key: WorkUnitKey) -> Optional[CheckpointRecord]:
        """Return the terminal record for ``key``, if any."""
        if key in self._completed:
            return self._completed[key]
        if key in self._failed:
            return CheckpointRecord(key=key, status=UnitStatus.FAILED)
        return None

    def mark_completed(self, key: WorkUnitKey, cost: int) -> None:
        """Record a unit as completed.

        A key that is already completed keeps its original record.

        Raises:
            ValueError: If the key is currently marked failed
        """
        if key in self._failed:
            raise ValueError(f"Work unit {key} is marked failed; clear it before completing")
        if key in self._completed:
            logger.debug("Work unit %s already completed; keeping original record", key)
            return
        self._completed[key] = CheckpointRecord(
            key=key,
            status=UnitStatus.COMPLETED,
            cost=cost,
            completed_at=datetime.now(),
        )

    def mark_failed(self, key: WorkUnitKey) -> None:
        """Record a unit as permanently failed.

        Raises:
            ValueError: If the key is already completed
        """
        if key in self._completed:
            raise ValueError(f"Work unit {key} is already completed")
        self._failed.add(key)

    def completed_keys(self) -> List[WorkUnitKey]:
        return list(self._completed)

    def failed_keys(self) -> List[WorkUnitKey]:
        return list(self._failed)

    def has_failures(self) -> bool:
        return bool(self._failed)

    def clear_failed(self) -> int:
        """Forget failed units so the next run retries them.

        Returns:
            Number of keys cleared
        """
        count = len(self._failed)
        self._failed.clear()
        logger.info("Cleared %d failed work unit(s)", count)
        return count

    def clear(self) -> None:
        """Explicit job reset: drop all records and counters and delete the file."""
        self._completed.clear()
        self._failed.clear()
        self.stats = {}
        try:
            self.path.unlink()
            logger.info("Checkpoint file cleared: %s", self.path)
        except FileNotFoundError:
            pass

    @staticmethod
    def _decode(data: Any):
        if not isinstance(data, dict):
            raise ValueError("checkpoint document must be an object")

        completed: Dict[WorkUnitKey, CheckpointRecord] = {}
        for encoded, entry in (data.get("completed") or {}).items():
            key = WorkUnitKey.decode(encoded)
            timestamp = entry.get("timestamp")
            completed[key] = CheckpointRecord(
                key=key,
                status=UnitStatus.COMPLETED,
                cost=int(entry.get("cost") or 0),
                completed_at=datetime.fromisoformat(timestamp) if timestamp else None,
            )

        failed = {WorkUnitKey.decode(encoded) for encoded in (data.get("failed") or [])}
        # A key recorded both ways stays completed
        failed -= set(completed)

        stats = data.get("stats") or {}
        try:
            if not isinstance(stats, dict):
                raise ValueError("stats must be an object")
            stats = JobStats.from_dict(stats).to_dict()
        except ValueError as e:
            # Records stay usable; only the counters restart
            logger.warning("Discarding unreadable checkpoint stats: %s", e)
            stats = {}
        return completed, failed, stats
