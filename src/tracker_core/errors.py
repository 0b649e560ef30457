from __future__ import annotations

from typing import Any


class TrackerError(RuntimeError):
    """Base class for typed tracker errors surfaced to operators and API clients.

    Keyword arguments passed to the constructor are kept as ``context`` and
    included in the payload, e.g. ``OperationNotFoundError(msg, operation_id=...)``.
    """

    error_code = "INTERNAL_ERROR"
    failure_class = "internal"
    user_message = "An internal error occurred."
    http_status = 500

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message)
        self.context = {key: value for key, value in context.items() if value is not None}

    def metadata(self) -> dict[str, str]:
        return {
            "error_code": self.error_code,
            "failure_class": self.failure_class,
            "user_message": self.user_message,
        }

    def payload(self, *, detail: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.metadata())
        payload["detail"] = str(self) if detail is None else str(detail)
        if self.context:
            payload["context"] = dict(self.context)
        return payload


def typed_error_metadata(exc: BaseException) -> dict[str, str] | None:
    return exc.metadata() if isinstance(exc, TrackerError) else None


def typed_error_payload(exc: BaseException) -> dict[str, Any] | None:
    return exc.payload() if isinstance(exc, TrackerError) else None


class ConfigError(TrackerError):
    """Tracker TOML or environment configuration is invalid."""

    error_code = "CONFIG_ERROR"
    failure_class = "configuration"
    user_message = "Configuration is invalid."
    http_status = 400


class MessageDecodeError(TrackerError):
    """An inbound event channel frame is not a JSON object with a string ``type``."""

    error_code = "MESSAGE_DECODE_ERROR"
    failure_class = "decode"
    user_message = "Backend message could not be decoded."
    http_status = 400


class TransportError(TrackerError):
    """The backend event channel failed to open or reported an error frame."""

    error_code = "TRANSPORT_ERROR"
    failure_class = "transport"
    user_message = "Backend event channel is not available."
    http_status = 502


class OperationNotFoundError(TrackerError):
    error_code = "OPERATION_NOT_FOUND"
    failure_class = "not_found"
    user_message = "Operation is not tracked."
    http_status = 404
