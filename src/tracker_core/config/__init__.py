from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python < 3.11
    import tomli as tomllib

from tracker_core.errors import ConfigError


_SECTION_KEYS = ("transport", "registry", "logs", "refresh", "logging", "operations")
BACKEND_URL_ENV = "OPS_TRACKER_BACKEND_URL"
CONFIG_FILE_ENV = "OPS_TRACKER_CONFIG"
DEFAULT_BACKEND_URL = "ws://localhost:5001"
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_HEARTBEAT_S = 30.0
DEFAULT_SUCCESS_GRACE_MS = 3000
DEFAULT_FAILURE_GRACE_MS = 5000
DEFAULT_REFRESH_DELAY_MS = 1000
DEFAULT_LOG_CAPACITY = 1000


def _ensure_dict(value: object, *, label: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{label} must be a table/object.")
    return dict(value)


def _ensure_optional_str(value: object, *, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string.")
    return value


def _ensure_int(value: object, *, label: str, default: int, minimum: int = 0) -> int:
    if value is None:
        return default
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label} must be an integer.")
    if value < minimum:
        raise ConfigError(f"{label} must be >= {minimum}.")
    return value


def _ensure_float(value: object, *, label: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{label} must be a number.")
    if value < 0:
        raise ConfigError(f"{label} must be >= 0.")
    return float(value)


@dataclass(frozen=True)
class TransportConfig:
    url: str = DEFAULT_BACKEND_URL
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    heartbeat_s: float = DEFAULT_HEARTBEAT_S


@dataclass(frozen=True)
class RegistryConfig:
    success_grace_ms: int = DEFAULT_SUCCESS_GRACE_MS
    failure_grace_ms: int = DEFAULT_FAILURE_GRACE_MS
    refresh_delay_ms: int = DEFAULT_REFRESH_DELAY_MS


@dataclass(frozen=True)
class LogsConfig:
    capacity: int = DEFAULT_LOG_CAPACITY


@dataclass(frozen=True)
class RefreshConfig:
    api_base: str | None = None


@dataclass(frozen=True)
class LoggingConfig:
    level: str | None = None
    domains: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OperationTemplateConfig:
    title: str | None = None
    description: str | None = None
    steps: tuple[str, ...] | None = None
    estimated_duration_ms: int | None = None


@dataclass(frozen=True)
class TrackerConfig:
    transport: TransportConfig = field(default_factory=TransportConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    logs: LogsConfig = field(default_factory=LogsConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    operations: dict[str, OperationTemplateConfig] = field(default_factory=dict)
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | dict[str, Any]) -> "TrackerConfig":
        if not isinstance(payload, Mapping):
            raise ConfigError("Config payload root must be a table/object.")

        raw = dict(payload)
        extras = {k: v for k, v in raw.items() if k not in _SECTION_KEYS}
        return cls(
            transport=_parse_transport(raw),
            registry=_parse_registry(raw),
            logs=_parse_logs(raw),
            refresh=_parse_refresh(raw),
            logging=_parse_logging(raw),
            operations=_parse_operations(raw),
            extras=extras,
        )

    @classmethod
    def from_toml_path(cls, path: str | Path) -> "TrackerConfig":
        config_path = Path(path)
        try:
            raw = config_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Unable to read config file {config_path}: {exc}") from exc
        try:
            parsed = tomllib.loads(raw)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
        return cls.from_dict(parsed)


def _parse_transport(raw_root: dict[str, Any]) -> TransportConfig:
    transport_raw = _ensure_dict(raw_root.get("transport"), label="section 'transport'")
    url = _ensure_optional_str(transport_raw.get("url"), label="transport.url")
    url = str(url or "").strip() or DEFAULT_BACKEND_URL
    if not url.startswith(("ws://", "wss://", "http://", "https://")):
        raise ConfigError("transport.url must be a ws://, wss://, http:// or https:// URL.")
    return TransportConfig(
        url=url,
        base_delay_ms=_ensure_int(
            transport_raw.get("base_delay_ms"),
            label="transport.base_delay_ms",
            default=DEFAULT_BASE_DELAY_MS,
            minimum=1,
        ),
        max_reconnect_attempts=_ensure_int(
            transport_raw.get("max_reconnect_attempts"),
            label="transport.max_reconnect_attempts",
            default=DEFAULT_MAX_RECONNECT_ATTEMPTS,
        ),
        heartbeat_s=_ensure_float(
            transport_raw.get("heartbeat_s"),
            label="transport.heartbeat_s",
            default=DEFAULT_HEARTBEAT_S,
        ),
    )


def _parse_registry(raw_root: dict[str, Any]) -> RegistryConfig:
    registry_raw = _ensure_dict(raw_root.get("registry"), label="section 'registry'")
    return RegistryConfig(
        success_grace_ms=_ensure_int(
            registry_raw.get("success_grace_ms"),
            label="registry.success_grace_ms",
            default=DEFAULT_SUCCESS_GRACE_MS,
        ),
        failure_grace_ms=_ensure_int(
            registry_raw.get("failure_grace_ms"),
            label="registry.failure_grace_ms",
            default=DEFAULT_FAILURE_GRACE_MS,
        ),
        refresh_delay_ms=_ensure_int(
            registry_raw.get("refresh_delay_ms"),
            label="registry.refresh_delay_ms",
            default=DEFAULT_REFRESH_DELAY_MS,
        ),
    )


def _parse_logs(raw_root: dict[str, Any]) -> LogsConfig:
    logs_raw = _ensure_dict(raw_root.get("logs"), label="section 'logs'")
    return LogsConfig(
        capacity=_ensure_int(
            logs_raw.get("capacity"),
            label="logs.capacity",
            default=DEFAULT_LOG_CAPACITY,
            minimum=1,
        )
    )


def _parse_refresh(raw_root: dict[str, Any]) -> RefreshConfig:
    refresh_raw = _ensure_dict(raw_root.get("refresh"), label="section 'refresh'")
    api_base = _ensure_optional_str(refresh_raw.get("api_base"), label="refresh.api_base")
    api_base = str(api_base or "").strip().rstrip("/")
    return RefreshConfig(api_base=api_base or None)


def _parse_logging(raw_root: dict[str, Any]) -> LoggingConfig:
    logging_raw = _ensure_dict(raw_root.get("logging"), label="section 'logging'")
    level = _ensure_optional_str(logging_raw.get("level"), label="logging.level")
    domains = _ensure_dict(logging_raw.get("domains"), label="section 'logging.domains'")
    return LoggingConfig(level=level, domains=domains)


def _parse_operations(raw_root: dict[str, Any]) -> dict[str, OperationTemplateConfig]:
    operations_raw = _ensure_dict(raw_root.get("operations"), label="section 'operations'")
    templates: dict[str, OperationTemplateConfig] = {}
    for kind, value in operations_raw.items():
        normalized_kind = str(kind or "").strip().lower()
        if not normalized_kind or "-" in normalized_kind:
            raise ConfigError(f"operations.{kind} is not a valid operation kind.")
        template_raw = _ensure_dict(value, label=f"section 'operations.{kind}'")
        steps_raw = template_raw.get("steps")
        steps: tuple[str, ...] | None = None
        if steps_raw is not None:
            if not isinstance(steps_raw, list) or not all(isinstance(step, str) for step in steps_raw):
                raise ConfigError(f"operations.{kind}.steps must be a list of strings.")
            steps = tuple(steps_raw)
        estimate = template_raw.get("estimated_duration_ms")
        if estimate is not None:
            estimate = _ensure_int(estimate, label=f"operations.{kind}.estimated_duration_ms", default=0)
        templates[normalized_kind] = OperationTemplateConfig(
            title=_ensure_optional_str(template_raw.get("title"), label=f"operations.{kind}.title"),
            description=_ensure_optional_str(
                template_raw.get("description"),
                label=f"operations.{kind}.description",
            ),
            steps=steps,
            estimated_duration_ms=estimate,
        )
    return templates


def apply_environment_overrides(
    config: TrackerConfig,
    environ: Mapping[str, str] | None = None,
) -> TrackerConfig:
    env = os.environ if environ is None else environ
    url = str(env.get(BACKEND_URL_ENV) or "").strip()
    if not url:
        return config
    return with_backend_url(config, url)


def with_backend_url(config: TrackerConfig, url: str) -> TrackerConfig:
    return replace(config, transport=replace(config.transport, url=str(url).strip()))


def load_tracker_config(path: str | Path) -> TrackerConfig:
    return TrackerConfig.from_toml_path(path)


def load_tracker_config_dict(payload: Mapping[str, Any] | dict[str, Any]) -> TrackerConfig:
    return TrackerConfig.from_dict(payload)


__all__ = [
    "BACKEND_URL_ENV",
    "CONFIG_FILE_ENV",
    "DEFAULT_BACKEND_URL",
    "LoggingConfig",
    "LogsConfig",
    "OperationTemplateConfig",
    "RefreshConfig",
    "RegistryConfig",
    "TrackerConfig",
    "TransportConfig",
    "apply_environment_overrides",
    "load_tracker_config",
    "load_tracker_config_dict",
    "with_backend_url",
]
