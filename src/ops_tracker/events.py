from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any


LOGGER = logging.getLogger("ops_tracker.events")

EventHandler = Callable[[Any], None]


class EventEmitter:
    """Named-event fan-out with ordered, synchronous dispatch.

    Handlers run in registration order. A handler that raises is logged and
    skipped; sibling handlers and the emitting caller are unaffected.
    """

    def __init__(self, *, name: str = "events") -> None:
        self._name = name
        self._handlers: dict[str, list[EventHandler]] = {}

    def on(self, event_name: str, handler: EventHandler) -> None:
        self._handlers.setdefault(str(event_name), []).append(handler)

    def off(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(str(event_name))
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._handlers[str(event_name)]

    def handler_count(self, event_name: str) -> int:
        return len(self._handlers.get(str(event_name)) or ())

    def emit(self, event_name: str, payload: Any = None) -> None:
        handlers = list(self._handlers.get(str(event_name)) or ())
        for handler in handlers:
            try:
                handler(payload)
            except Exception as exc:
                LOGGER.exception(
                    "Event handler failed emitter=%s event=%s",
                    self._name,
                    event_name,
                    extra={
                        "component": self._name,
                        "operation": str(event_name),
                        "result": "handler_error",
                        "error_class": type(exc).__name__,
                    },
                )
