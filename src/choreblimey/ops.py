"""Operational utilities for ChoreBlimey."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Callable

from .models import utcnow


class StructuredLogger:
    """Write JSON lines log entries for admin inspection.

    Entries are kept in memory (see :meth:`tail`) and, when ``path`` is set,
    appended to that file. ``bind`` returns a logger that stamps extra fields
    onto every entry while sharing the same sink.
    """

    def __init__(
        self,
        *,
        path: Path | str | None = None,
        now: Callable[[], datetime] = utcnow,
        max_entries: int = 1000,
    ) -> None:
        self.path = Path(path) if path else None
        self._now = now
        self._max_entries = max_entries
        self._entries: list[dict] = []
        self._context: dict = {}
        self._lock = Lock()
        self._write_failures = [0]  # shared with bound loggers

    def bind(self, **context: object) -> "StructuredLogger":
        child = StructuredLogger.__new__(StructuredLogger)
        child.path = self.path
        child._now = self._now
        child._max_entries = self._max_entries
        child._entries = self._entries
        child._context = {**self._context, **context}
        child._lock = self._lock
        child._write_failures = self._write_failures
        return child

    def log(self, event_type: str, **fields: object) -> dict:
        entry = {"timestamp": self._now().isoformat(), "event": event_type, **self._context, **fields}
        line = json.dumps(entry, default=str)
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self._max_entries:
                del self._entries[: len(self._entries) - self._max_entries]
            if self.path:
                self._append(line)
        return entry

    def _append(self, line: str) -> None:
        # The in-memory entry is kept even when the file write fails.
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError:
            self._write_failures[0] += 1

    @property
    def write_failures(self) -> int:
        return self._write_failures[0]

    def tail(self, limit: int = 50) -> tuple[dict, ...]:
        with self._lock:
            return tuple(self._entries[-limit:])

    def events(self, event_type: str) -> tuple[dict, ...]:
        with self._lock:
            return tuple(entry for entry in self._entries if entry["event"] == event_type)


__all__ = ["StructuredLogger"]
