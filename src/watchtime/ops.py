"""Operational utilities for watchtime."""

from __future__ import annotations

import json
import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Deque

LEVELS = ("debug", "info", "warning", "error")


class StructuredLogger:
    """Write JSON lines log entries for parent and support inspection."""

    def __init__(self, *, path: Path | None = None, capacity: int = 1000) -> None:
        self.path = path
        self._entries: Deque[dict] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def log(self, event_type: str, *, level: str = "info", **fields: object) -> dict:
        if level not in LEVELS:
            raise ValueError(f"Unknown log level: {level!r}")
        entry = {
            "timestamp": datetime.now().isoformat(),
            "event": event_type,
            "level": level,
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

    def tail(self, limit: int = 50, *, level: str | None = None) -> tuple[dict, ...]:
        with self._lock:
            entries = list(self._entries)
        if level is not None:
            entries = [entry for entry in entries if entry["level"] == level]
        return tuple(entries[-limit:]) if limit > 0 else tuple()

    def events(self) -> tuple[str, ...]:
        """Return the event names logged so far, oldest first."""

        with self._lock:
            return tuple(entry["event"] for entry in self._entries)


__all__ = ["LEVELS", "StructuredLogger"]
