"""Collapse audit trail and operator alerts."""
from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from .state import CollapseRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Alert:
    """Operator-facing notice emitted by the orchestrator."""

    severity: str
    reason: str
    phase: str
    issued_at: datetime

    def as_dict(self) -> dict[str, object]:
        return {
            "severity": self.severity,
            "reason": self.reason,
            "phase": self.phase,
            "issued_at": self.issued_at.isoformat(),
        }


def log_alert(alert: Alert) -> None:
    """Default alert sink: route alerts through the module logger."""

    level = logging.CRITICAL if alert.severity == "critical" else logging.WARNING
    logger.log(level, "Phaseshift alert [%s] during %s: %s", alert.severity, alert.phase, alert.reason)


class CollapseLedger:
    """Append-only log of :class:`CollapseRecord` entries.

    When ``path`` is given every record is appended to a JSON-lines file and
    the existing file is replayed on start-up, so rate limiting survives
    restarts.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._records: List[CollapseRecord] = []
        self._load()

    def append(self, record: CollapseRecord) -> None:
        with self._lock:
            self._records.append(record)
            if self._path is not None:
                self._persist(record)

    def records(self, limit: Optional[int] = None) -> Sequence[CollapseRecord]:
        with self._lock:
            records = list(self._records)
        return records[-limit:] if limit else records

    def latest(self) -> Optional[CollapseRecord]:
        with self._lock:
            return self._records[-1] if self._records else None

    def count_since(self, cutoff: datetime) -> int:
        with self._lock:
            return sum(1 for record in self._records if record.started_at >= cutoff)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ------------------------------------------------------------------
    # Persistence helpers
    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        with open(self._path, "r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    self._records.append(CollapseRecord.from_dict(json.loads(line)))
                except (KeyError, ValueError) as exc:
                    raise RuntimeError(f"{self._path}:{line_number}: malformed collapse record") from exc

    def _persist(self, record: CollapseRecord) -> None:
        assert self._path is not None
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(record.as_dict(), separators=(",", ":")) + "\n")
            handle.flush()
            os.fsync(handle.fileno())


__all__ = ["Alert", "CollapseLedger", "log_alert"]
