from __future__ import annotations

from collections import deque
from collections.abc import Iterator
from datetime import datetime

from ops_tracker.models import LogEntry, LogLevel, now_ms


DEFAULT_LOG_CAPACITY = 1000


def format_log_time(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000.0).strftime("%H:%M:%S")


class LogBuffer:
    """Bounded, ordered log storage for one operation.

    Oldest entries are evicted once ``capacity`` is exceeded. ``export`` only
    covers what is still retained.
    """

    def __init__(self, capacity: int = DEFAULT_LOG_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("LogBuffer capacity must be >= 1.")
        self._entries: deque[LogEntry] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return int(self._entries.maxlen or 0)

    def append(self, entry: LogEntry) -> None:
        self._entries.append(entry)

    def add(self, message: str, level: LogLevel | str = LogLevel.INFO, *, timestamp: int | None = None) -> LogEntry:
        entry = LogEntry(
            timestamp=now_ms() if timestamp is None else int(timestamp),
            message=str(message),
            level=LogLevel.coerce(level),
        )
        self.append(entry)
        return entry

    def snapshot(self, n: int | None = None) -> tuple[LogEntry, ...]:
        if n is None:
            return tuple(self._entries)
        if n <= 0:
            return ()
        start = max(0, len(self._entries) - n)
        return tuple(self._entries[index] for index in range(start, len(self._entries)))

    def export(self) -> str:
        return "\n".join(
            f"[{format_log_time(entry.timestamp)}] {entry.level.value.upper()}: {entry.message}"
            for entry in self._entries
        )

    @staticmethod
    def export_filename(timestamp_ms: int | None = None) -> str:
        return f"operation-logs-{now_ms() if timestamp_ms is None else int(timestamp_ms)}.txt"

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(tuple(self._entries))
