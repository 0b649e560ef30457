from __future__ import annotations

from pathlib import Path

import pytest

from tracker_core import ConfigError
from tracker_core.config import (
    BACKEND_URL_ENV,
    TrackerConfig,
    apply_environment_overrides,
    load_tracker_config,
    load_tracker_config_dict,
)


def test_tracker_config_defaults() -> None:
    config = load_tracker_config_dict({})

    assert isinstance(config, TrackerConfig)
    assert config.transport.url == "ws://localhost:5001"
    assert config.transport.base_delay_ms == 1000
    assert config.transport.max_reconnect_attempts == 5
    assert config.registry.success_grace_ms == 3000
    assert config.registry.failure_grace_ms == 5000
    assert config.registry.refresh_delay_ms == 1000
    assert config.logs.capacity == 1000
    assert config.refresh.api_base is None
    assert config.logging.level is None
    assert config.logging.domains == {}
    assert config.operations == {}
    assert config.extras == {}


def test_tracker_config_section_parsing() -> None:
    config = load_tracker_config_dict(
        {
            "transport": {"url": "wss://hub.example/ws", "base_delay_ms": 250, "heartbeat_s": 0},
            "registry": {"success_grace_ms": 0},
            "logs": {"capacity": 50},
            "refresh": {"api_base": "http://hub.example/"},
            "logging": {"level": "debug", "domains": {"transport": "warn"}},
            "operations": {"Backup": {"title": "Backing up", "steps": ["Dump", "Upload"]}},
            "custom_key": "value",
        }
    )

    assert config.transport.url == "wss://hub.example/ws"
    assert config.transport.base_delay_ms == 250
    assert config.transport.heartbeat_s == 0.0
    assert config.registry.success_grace_ms == 0
    assert config.logs.capacity == 50
    assert config.refresh.api_base == "http://hub.example"
    assert config.logging.domains == {"transport": "warn"}
    assert config.operations["backup"].steps == ("Dump", "Upload")
    assert config.operations["backup"].estimated_duration_ms is None
    assert config.extras == {"custom_key": "value"}


@pytest.mark.parametrize(
    "payload",
    [
        {"transport": "ws://x"},
        {"transport": {"url": "ftp://backend"}},
        {"transport": {"base_delay_ms": 0}},
        {"transport": {"max_reconnect_attempts": True}},
        {"logs": {"capacity": 0}},
        {"operations": {"re-build": {}}},
        {"operations": {"start": {"steps": "Pull"}}},
    ],
)
def test_tracker_config_rejects_invalid_values(payload: dict) -> None:
    with pytest.raises(ConfigError):
        load_tracker_config_dict(payload)


def test_environment_override_replaces_backend_url() -> None:
    config = load_tracker_config_dict({"transport": {"url": "ws://a:1", "base_delay_ms": 10}})

    overridden = apply_environment_overrides(config, {BACKEND_URL_ENV: " ws://b:2 "})

    assert overridden.transport.url == "ws://b:2"
    assert overridden.transport.base_delay_ms == 10
    assert config.transport.url == "ws://a:1"
    assert apply_environment_overrides(config, {}) is config


def test_load_tracker_config_from_toml(tmp_path: Path) -> None:
    path = tmp_path / "tracker.toml"
    path.write_text(
        "[transport]\nurl = \"ws://backend:5001\"\n\n[operations.stop]\nestimated_duration_ms = 9000\n",
        encoding="utf-8",
    )

    config = load_tracker_config(path)

    assert config.transport.url == "ws://backend:5001"
    assert config.operations["stop"].estimated_duration_ms == 9000


def test_load_tracker_config_reports_bad_toml(tmp_path: Path) -> None:
    path = tmp_path / "broken.toml"
    path.write_text("[transport\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_tracker_config(path)

    with pytest.raises(ConfigError, match="Unable to read"):
        load_tracker_config(tmp_path / "missing.toml")
