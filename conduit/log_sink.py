"""Capped in-memory log sink for UIs and task transcripts.

Appends are best-effort: a failing sink never interrupts the caller.
LogSinkHandler mirrors stdlib logging records into a sink.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 200
_DATA_EXCERPT = 500


@dataclass
class LogEntry:
    type: str
    message: str
    data: str | None = None
    time: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @classmethod
    def create(cls, type: str, message: str, data: Any = None) -> LogEntry:
        if data is not None and not isinstance(data, str):
            data = json.dumps(data, default=str)
        return cls(type=type, message=message, data=data[:_DATA_EXCERPT] if data else None)


class LogSink:
    """Keeps the most recent ``capacity`` entries; older ones fall off."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._entries: deque[LogEntry] = deque(maxlen=capacity)

    def append(self, entry: LogEntry) -> None:
        try:
            self._entries.append(entry)
        except Exception:
            logger.debug("Log sink append failed", exc_info=True)

    def log(self, type: str, message: str, data: Any = None) -> None:
        try:
            self.append(LogEntry.create(type, message, data))
        except (TypeError, ValueError):
            logger.debug("Log sink entry could not be serialized", exc_info=True)

    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class LogSinkHandler(logging.Handler):
    """Route logging records into a LogSink."""

    def __init__(self, sink: LogSink, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self.sink = sink

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.sink.append(
                LogEntry(
                    type=record.levelname,
                    message=record.getMessage(),
                    data=record.name,
                    time=datetime.fromtimestamp(record.created, UTC).isoformat(),
                )
            )
        except Exception:
            self.handleError(record)
