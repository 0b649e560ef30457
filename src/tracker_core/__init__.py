from __future__ import annotations

from .config import (
    DEFAULT_BACKEND_URL,
    TrackerConfig,
    apply_environment_overrides,
    load_tracker_config,
    load_tracker_config_dict,
)
from .errors import (
    ConfigError,
    MessageDecodeError,
    OperationNotFoundError,
    TrackerError,
    TransportError,
)

__all__ = [
    "ConfigError",
    "DEFAULT_BACKEND_URL",
    "MessageDecodeError",
    "OperationNotFoundError",
    "TrackerConfig",
    "TrackerError",
    "TransportError",
    "apply_environment_overrides",
    "load_tracker_config",
    "load_tracker_config_dict",
]
