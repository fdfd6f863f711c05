"""Operational utilities for FamilyBank."""

from __future__ import annotations

import json
import threading
from collections import deque
from pathlib import Path
from typing import Deque

from .models import utcnow


class StructuredLogger:
    """Write JSON lines log entries for admin inspection.

    Entries are kept in a bounded in-memory tail and, when ``path`` is given,
    appended to that file. Safe to share between request handler threads.
    """

    def __init__(self, *, path: Path | str | None = None, keep: int = 1000) -> None:
        self.path = Path(path) if path else None
        self._entries: Deque[dict] = deque(maxlen=keep)
        self._lock = threading.Lock()

    def log(self, event_type: str, *, level: str = "info", **fields: object) -> dict:
        entry = {
            "timestamp": utcnow().isoformat(),
            "level": level,
            "event": event_type,
            **fields,
        }
        with self._lock:
            self._entries.append(entry)
            if self.path:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(entry, default=str) + "\n")
        return entry

    def warning(self, event_type: str, **fields: object) -> dict:
        return self.log(event_type, level="warning", **fields)

    def error(self, event_type: str, **fields: object) -> dict:
        return self.log(event_type, level="error", **fields)

    def tail(self, limit: int = 50, *, event_type: str | None = None) -> tuple[dict, ...]:
        with self._lock:
            entries = list(self._entries)
        if event_type is not None:
            entries = [entry for entry in entries if entry["event"] == event_type]
        return tuple(entries[-limit:])


__all__ = ["StructuredLogger"]
