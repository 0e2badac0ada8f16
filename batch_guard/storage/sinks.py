"""
Output sinks for per-unit results.

A sink must record a result durably before append_result returns; the
driver only marks a unit completed after the sink accepted it.
"""

import hashlib
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .models import OutcomeStatus, UnitOutcome, WorkUnitKey

logger = logging.getLogger(__name__)


class OutputSink(Protocol):
    """Destination for unit outcomes."""

    def append_result(self, key: WorkUnitKey, outcome: UnitOutcome) -> None:
        ...

    def flush(self) -> None:
        ...


class JsonlSink:
    """Appends one JSON line per unit outcome.

    Each line is fsynced as it is written, so a crash loses at most the
    unit that was in flight.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._index: Optional[Dict[WorkUnitKey, Any]] = None

    def append_result(self, key: WorkUnitKey, outcome: UnitOutcome) -> None:
        record = {
            "key": list(key.parts),
            "status": outcome.status.value,
            "value": outcome.value,
            "cost": outcome.cost,
            "error": outcome.error,
        }
        line = json.dumps(record, ensure_ascii=False, default=str)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'a', encoding='utf-8') as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())
        if self._index is not None and outcome.status == OutcomeStatus.COMPLETED:
            self._index[key] = outcome.value

    def flush(self) -> None:
        # Lines are already durable when append_result returns
        return None

    def lookup(self, key: WorkUnitKey) -> Optional[Any]:
        """Return the stored value of a completed unit, or None if absent."""
        if self._index is None:
            self._index = self._load_index()
        return self._index.get(key)

    def _load_index(self) -> Dict[WorkUnitKey, Any]:
        index: Dict[WorkUnitKey, Any] = {}
        if not self.path.exists():
            return index
        with open(self.path, 'r', encoding='utf-8') as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                    key = WorkUnitKey(tuple(record["key"]))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning("Skipping unreadable line %d in %s: %s", line_number, self.path, e)
                    continue
                if record.get("status") == OutcomeStatus.COMPLETED.value:
                    index[key] = record.get("value")
        return index


class MarkdownSink:
    """Writes one Markdown file per unit and a combined report on flush.

    Unit files double as the cache for units completed in an earlier run.
    """

    def __init__(self, directory: str, report_path: Optional[str] = None, title: str = "Analysis Report"):
        self.directory = Path(directory)
        self.report_path = Path(report_path) if report_path else None
        self.title = title
        self._order: List[WorkUnitKey] = []

    def unit_path(self, key: WorkUnitKey) -> Path:
        """File holding a unit's output; the hash suffix keeps sanitized names unique."""
        readable = "__".join(re.sub(r"[^A-Za-z0-9_-]+", "_", str(p)) for p in key.parts)
        digest = hashlib.sha256(key.encode().encode("utf-8")).hexdigest()[:8]
        return self.directory / f"{readable}_{digest}.md"

    def append_result(self, key: WorkUnitKey, outcome: UnitOutcome) -> None:
        # Failed units have no file; the report renders a placeholder for them
        if outcome.status != OutcomeStatus.FAILED:
            self.directory.mkdir(parents=True, exist_ok=True)
            self.unit_path(key).write_text(_render_value(outcome.value), encoding='utf-8')
        if key not in self._order:
            self._order.append(key)
        logger.debug("Recorded %s output for %s", outcome.status.value, key)

    def flush(self) -> None:
        """Rewrite the combined report from the unit files seen so far."""
        if self.report_path is None:
            return
        lines = [f"# {self.title}", ""]
        for key in self._order:
            lines.append(f"## {key}")
            lines.append("")
            text = self.lookup(key)
            lines.append(text if text is not None else f"*Batch {key} failed after retries*")
            lines.append("")
        self.report_path.parent.mkdir(parents=True, exist_ok=True)
        self.report_path.write_text("\n".join(lines), encoding='utf-8')

    def lookup(self, key: WorkUnitKey) -> Optional[str]:
        path = self.unit_path(key)
        if not path.exists():
            logger.warning("Unit output not found: %s", path)
            return None
        if key not in self._order:
            self._order.append(key)
        return path.read_text(encoding='utf-8')


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and set(value) == {"text"}:
        return str(value["text"])
    return "```json\n" + json.dumps(value, indent=2, ensure_ascii=False, default=str) + "\n```"
