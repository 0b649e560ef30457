from __future__ import annotations

import json
import logging
from typing import Any

from tracker_core.errors import MessageDecodeError

from ops_tracker.events import EventEmitter
from ops_tracker.models import OPERATION_EVENT_PREFIX
from ops_tracker.registry import OperationRegistry


LOGGER = logging.getLogger("ops_tracker.router")

EVENT_MESSAGE = "message"


def decode_message(raw: str | bytes) -> dict[str, Any]:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MessageDecodeError(f"Message is not valid UTF-8: {exc}") from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MessageDecodeError(f"Message is not valid JSON: {exc}") from exc
    except RecursionError as exc:
        raise MessageDecodeError("Message is nested too deeply to decode.") from exc
    if not isinstance(payload, dict):
        raise MessageDecodeError("Message must be a JSON object.")
    message_type = payload.get("type")
    if not isinstance(message_type, str) or not message_type.strip():
        raise MessageDecodeError("Message is missing a string 'type' field.")
    return payload


class EventRouter:
    """Decodes inbound channel frames and fans them out in arrival order."""

    def __init__(self, *, events: EventEmitter, registry: OperationRegistry) -> None:
        self._events = events
        self._registry = registry

    def route(self, raw: str | bytes) -> dict[str, Any] | None:
        try:
            message = decode_message(raw)
        except MessageDecodeError as exc:
            LOGGER.warning(
                "Dropping undecodable message: %s",
                exc,
                extra={
                    "component": "router",
                    "operation": "decode",
                    "result": "dropped",
                    "error_class": exc.error_code,
                },
            )
            return None
        self.dispatch(message)
        return message

    def dispatch(self, message: dict[str, Any]) -> None:
        message_type = str(message["type"])
        self._events.emit(EVENT_MESSAGE, message)
        if message_type.startswith(OPERATION_EVENT_PREFIX):
            try:
                self._registry.handle_backend_event(message)
            except Exception as exc:
                LOGGER.exception(
                    "Operation event handling failed type=%s",
                    message_type,
                    extra={
                        "component": "router",
                        "operation": message_type,
                        "result": "error",
                        "error_class": type(exc).__name__,
                    },
                )
        self._events.emit(message_type, message)
