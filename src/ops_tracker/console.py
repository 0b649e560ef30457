from __future__ import annotations

from collections.abc import Callable
from typing import Any

import click

from ops_tracker.events import EventEmitter
from ops_tracker.log_buffer import DEFAULT_LOG_CAPACITY, LogBuffer, format_log_time
from ops_tracker.models import LogEntry, LogLevel, now_ms
from ops_tracker.registry import EVENT_OPERATION_COMPLETE, EVENT_OPERATION_LOG, EVENT_OPERATION_STEP
from ops_tracker.scheduler import LoopScheduler, Scheduler, TimerHandle
from ops_tracker.transport import EVENT_CONNECTED, EVENT_DISCONNECTED


RULE = "─" * 50
AUTO_CLOSE_MS = 3000
_LEVEL_COLORS = {
    LogLevel.INFO: None,
    LogLevel.SUCCESS: "green",
    LogLevel.WARNING: "yellow",
    LogLevel.ERROR: "red",
    LogLevel.COMMAND: "cyan",
}


def _echo(line: str) -> None:
    click.echo(line)


def render_console_line(entry: LogEntry, *, color: bool = False) -> str:
    text = f"[{format_log_time(entry.timestamp)}] {entry.message}"
    fg = _LEVEL_COLORS.get(entry.level)
    if color and fg:
        return click.style(text, fg=fg)
    return text


class LiveConsole:
    """Operator log view that follows one backend operation id."""

    def __init__(
        self,
        events: EventEmitter,
        *,
        write: Callable[[str], None] = _echo,
        scheduler: Scheduler | None = None,
        clock: Callable[[], int] = now_ms,
        color: bool = False,
        capacity: int = DEFAULT_LOG_CAPACITY,
    ) -> None:
        self._events = events
        self._write = write
        self._scheduler = scheduler or LoopScheduler()
        self._clock = clock
        self._color = color
        self.buffer = LogBuffer(capacity)
        self.current_operation: str | None = None
        self.is_open = False
        self.status = "Ready"
        self._close_handle: TimerHandle | None = None
        self._attached = False

    def attach(self) -> None:
        if self._attached:
            return
        self._events.on(EVENT_OPERATION_LOG, self._on_log)
        self._events.on(EVENT_OPERATION_STEP, self._on_step)
        self._events.on(EVENT_OPERATION_COMPLETE, self._on_complete)
        self._events.on(EVENT_CONNECTED, self._on_connected)
        self._events.on(EVENT_DISCONNECTED, self._on_disconnected)
        self._attached = True

    def detach(self) -> None:
        if not self._attached:
            return
        self._events.off(EVENT_OPERATION_LOG, self._on_log)
        self._events.off(EVENT_OPERATION_STEP, self._on_step)
        self._events.off(EVENT_OPERATION_COMPLETE, self._on_complete)
        self._events.off(EVENT_CONNECTED, self._on_connected)
        self._events.off(EVENT_DISCONNECTED, self._on_disconnected)
        self._attached = False

    def open(self, operation: str, operation_id: str) -> None:
        self._cancel_auto_close()
        self.current_operation = str(operation_id)
        self.is_open = True
        self.buffer.clear()
        self.status = f"Running {operation}..."
        self.add_log_line(f"Starting {operation} operation...")
        self.add_log_line(f"Operation ID: {operation_id}")
        self.add_log_line(RULE)

    def close(self) -> None:
        self._cancel_auto_close()
        self.is_open = False
        self.current_operation = None
        self.status = "Ready"

    def _cancel_auto_close(self) -> None:
        if self._close_handle is not None:
            self._close_handle.cancel()
            self._close_handle = None

    def add_log_line(self, message: str, level: LogLevel | str = LogLevel.INFO) -> None:
        if not self.is_open:
            return
        entry = self.buffer.add(str(message), level, timestamp=int(self._clock()))
        self._write(render_console_line(entry, color=self._color))

    def add_command_line(self, command: str) -> None:
        self.add_log_line(f"$ {command}", LogLevel.COMMAND)

    def clear(self) -> None:
        self.buffer.clear()

    def export(self) -> str:
        return self.buffer.export()

    def _follows(self, data: Any) -> bool:
        return (
            self.current_operation is not None
            and isinstance(data, dict)
            and data.get("operationId") == self.current_operation
        )

    def _on_log(self, data: Any) -> None:
        if self._follows(data):
            self.add_log_line(str(data.get("message") or ""), data.get("logType") or LogLevel.INFO)

    def _on_step(self, data: Any) -> None:
        if not self._follows(data):
            return
        step = data.get("step")
        step_label = f"Step {step}" if step is not None else "Step"
        message = data.get("stepMessage") or data.get("message") or ""
        progress = data.get("progress")
        suffix = f" ({progress}%)" if isinstance(progress, (int, float)) and not isinstance(progress, bool) else ""
        self.add_log_line(f"{step_label}{suffix}: {message}")

    def _on_complete(self, data: Any) -> None:
        if not self._follows(data):
            return
        success = data.get("success") is not False
        level = LogLevel.SUCCESS if success else LogLevel.ERROR
        status_text = "Operation completed successfully" if success else "Operation failed"
        self.add_log_line(RULE)
        self.add_log_line(status_text, level)
        if data.get("message"):
            self.add_log_line(str(data["message"]), level)
        self.status = status_text
        if success:
            self._cancel_auto_close()
            self._close_handle = self._scheduler.call_later(AUTO_CLOSE_MS, self._auto_close)

    def _auto_close(self) -> None:
        self._close_handle = None
        if self.is_open:
            self.close()

    def _on_connected(self, _payload: Any) -> None:
        self._write("Connected to backend event channel.")

    def _on_disconnected(self, payload: Any) -> None:
        code = payload.get("code") if isinstance(payload, dict) else None
        self._write(f"Disconnected from backend event channel (code={code}).")
