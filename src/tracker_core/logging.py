from __future__ import annotations

import logging
import re
import sys
from collections.abc import Callable, Mapping
from typing import Any, TextIO


ROOT_LOGGER_NAME = "ops_tracker"
LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")
STRUCTURED_LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s: "
    "component=%(component)s operation=%(operation)s operation_id=%(operation_id)s "
    "target_id=%(target_id)s result=%(result)s duration_ms=%(duration_ms)s "
    "error_class=%(error_class)s %(message)s"
)

_SECRET_KEYS = ("authorization", "token", "api_key", "password")
# key=value pairs in messages and query strings, and user:pass@ in URLs.
_SECRET_PAIR = re.compile(r"(?i)\b(" + "|".join(_SECRET_KEYS) + r")=([^\s,;&]+)")
_URL_CREDENTIALS = re.compile(r"(?i)\b((?:wss?|https?)://)[^/\s:@]+:[^/\s@]+@")


def redact_secrets(text: str) -> str:
    redacted = _SECRET_PAIR.sub(r"\1=[redacted]", text)
    return _URL_CREDENTIALS.sub(r"\1[redacted]@", redacted)


def _component_from_logger(name: str) -> str:
    prefix = f"{ROOT_LOGGER_NAME}."
    if name.startswith(prefix):
        return name[len(prefix):].split(".", 1)[0]
    return ""


class StructuredLogDefaultsFilter(logging.Filter):
    """Guarantees every structured field exists and scrubs credentials.

    ``component`` defaults to the submodule of the ``ops_tracker`` logger
    that emitted the record, so ``ops_tracker.transport`` logs as
    ``component=transport`` without each call passing it.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "component", ""):
            record.component = _component_from_logger(record.name)
        record.operation = getattr(record, "operation", "")
        record.operation_id = getattr(record, "operation_id", "")
        record.target_id = getattr(record, "target_id", "")
        record.result = getattr(record, "result", "")
        record.duration_ms = getattr(record, "duration_ms", 0)
        record.error_class = getattr(record, "error_class", "")
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        scrubbed = redact_secrets(message)
        if scrubbed != message:
            record.msg = scrubbed
            record.args = ()
        return True


def normalize_log_level(value: Any) -> str:
    candidate = str(value or "").strip().lower()
    if candidate == "warn":
        candidate = "warning"
    return candidate if candidate in LOG_LEVEL_CHOICES else "info"


def _level_number(level: Any) -> int:
    return getattr(logging, normalize_log_level(level).upper(), logging.INFO)


def configure_structured_logger(
    logger: logging.Logger,
    *,
    level: str,
    stream: TextIO | None = None,
) -> logging.Handler:
    handler = logging.StreamHandler(stream if stream is not None else sys.__stderr__)
    handler.addFilter(StructuredLogDefaultsFilter())
    handler.setFormatter(logging.Formatter(STRUCTURED_LOG_FORMAT))
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(_level_number(level))
    logger.propagate = False
    return handler


def configure_domain_log_levels(
    *,
    domains: Mapping[str, Any] | None,
    logger_prefix: str = ROOT_LOGGER_NAME,
    normalize_level: Callable[[Any], str] = normalize_log_level,
) -> dict[str, str]:
    """Apply ``[logging.domains]`` levels, e.g. ``transport = "debug"``.

    Returns the logger names that were changed with their new level.
    """
    applied: dict[str, str] = {}
    if not isinstance(domains, Mapping):
        return applied
    for domain, level_value in domains.items():
        normalized_domain = str(domain or "").strip().lower()
        if not normalized_domain:
            continue
        level = normalize_level(level_value)
        logger_name = f"{logger_prefix}.{normalized_domain}"
        logging.getLogger(logger_name).setLevel(getattr(logging, level.upper(), logging.INFO))
        applied[logger_name] = level
    return applied
