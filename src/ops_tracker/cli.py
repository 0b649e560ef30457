from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click
import uvicorn

from tracker_core import logging as core_logging
from tracker_core.config import (
    CONFIG_FILE_ENV,
    TrackerConfig,
    apply_environment_overrides,
    load_tracker_config,
    with_backend_url,
)
from tracker_core.errors import ConfigError

from ops_tracker.api import create_app
from ops_tracker.console import LiveConsole
from ops_tracker.models import split_backend_operation_id
from ops_tracker.router import EVENT_MESSAGE
from ops_tracker.tracker import OperationTracker, build_tracker
from ops_tracker.transport import EVENT_CONNECTED


LOGGER = logging.getLogger("ops_tracker")
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5055


def _load_config(config_file: Path | None, url: str | None) -> TrackerConfig:
    try:
        config = load_tracker_config(config_file) if config_file is not None else TrackerConfig()
    except ConfigError as exc:
        click.echo(
            json.dumps(
                {
                    "event": "ops_tracker_config_load_error",
                    "config_path": str(config_file),
                    "error": str(exc),
                },
                sort_keys=True,
            ),
            err=True,
        )
        raise click.ClickException(str(exc)) from exc
    config = apply_environment_overrides(config)
    if url:
        config = with_backend_url(config, url)
    return config


def _resolve_log_level(log_level: str | None, config: TrackerConfig) -> str:
    cli_value = str(log_level or "").strip()
    if cli_value:
        return core_logging.normalize_log_level(cli_value)
    return core_logging.normalize_log_level(config.logging.level or "info")


def _configure_logging(log_level: str | None, config: TrackerConfig) -> str:
    normalized = _resolve_log_level(log_level, config)
    core_logging.configure_structured_logger(LOGGER, level=normalized)
    core_logging.configure_domain_log_levels(domains=config.logging.domains, logger_prefix="ops_tracker")
    return normalized


def _summarize_message(message: dict[str, Any]) -> str:
    parts = [str(message.get("type"))]
    for key in ("operationId", "step", "progress", "logType", "success"):
        if key in message:
            parts.append(f"{key}={message[key]}")
    text = message.get("stepMessage") or message.get("message")
    if text:
        parts.append(str(text))
    return " ".join(parts)


async def _watch(tracker: OperationTracker, follow_id: str | None, export_path: Path | None) -> None:
    console = LiveConsole(tracker.events, color=True)
    console.attach()
    if follow_id:
        console.open(follow_id, follow_id)
        parsed = split_backend_operation_id(follow_id)
        if parsed is not None:
            target_id = parsed[1]
            pending: set[asyncio.Task[bool]] = set()

            def _subscribe(_payload: Any) -> None:
                task = asyncio.get_running_loop().create_task(tracker.transport.subscribe_logs(target_id))
                pending.add(task)
                task.add_done_callback(pending.discard)

            tracker.events.on(EVENT_CONNECTED, _subscribe)
    else:
        tracker.events.on(EVENT_MESSAGE, lambda message: click.echo(_summarize_message(message)))

    tracker.start()
    try:
        await asyncio.Event().wait()
    finally:
        console.detach()
        await tracker.stop()
        if export_path is not None:
            export_path.write_text(console.export() + "\n", encoding="utf-8")
            click.echo(f"Exported console log to {export_path}", err=True)


@click.group(help="Track live project lifecycle operations from the backend event channel.")
def cli() -> None:
    pass


@cli.command(help="Print backend operation events as they arrive.")
@click.option("--config-file", default=None, envvar=CONFIG_FILE_ENV, type=click.Path(exists=True, dir_okay=False, path_type=Path), help="Tracker TOML config file.")
@click.option("--url", default=None, help="Backend event channel URL (overrides config).")
@click.option("--follow", "follow_id", default=None, help="Backend operation id to follow, e.g. start-myproject.")
@click.option("--export", "export_path", default=None, type=click.Path(dir_okay=False, path_type=Path), help="Write the followed console log to this file on exit.")
@click.option(
    "--log-level",
    default=None,
    show_default="config logging.level or info",
    type=click.Choice(core_logging.LOG_LEVEL_CHOICES, case_sensitive=False),
)
def watch(
    config_file: Path | None,
    url: str | None,
    follow_id: str | None,
    export_path: Path | None,
    log_level: str | None,
) -> None:
    if export_path is not None and not follow_id:
        raise click.ClickException("--export requires --follow.")
    config = _load_config(config_file, url)
    normalized_log_level = _configure_logging(log_level, config)
    LOGGER.info(
        "Watching event channel url=%s log_level=%s",
        config.transport.url,
        normalized_log_level,
        extra={"component": "startup", "operation": "watch", "result": "started"},
    )
    tracker = build_tracker(config)
    try:
        asyncio.run(_watch(tracker, follow_id, export_path))
    except KeyboardInterrupt:
        click.echo("Stopped.", err=True)


@cli.command(help="Serve the operation tracker HTTP/websocket bridge for dashboard renderers.")
@click.option("--config-file", default=None, envvar=CONFIG_FILE_ENV, type=click.Path(exists=True, dir_okay=False, path_type=Path), help="Tracker TOML config file.")
@click.option("--url", default=None, help="Backend event channel URL (overrides config).")
@click.option("--host", default=DEFAULT_HOST, show_default=True)
@click.option("--port", default=DEFAULT_PORT, show_default=True, type=int)
@click.option(
    "--log-level",
    default=None,
    show_default="config logging.level or info",
    type=click.Choice(core_logging.LOG_LEVEL_CHOICES, case_sensitive=False),
)
def serve(config_file: Path | None, url: str | None, host: str, port: int, log_level: str | None) -> None:
    config = _load_config(config_file, url)
    normalized_log_level = _configure_logging(log_level, config)
    LOGGER.info(
        "Starting operation tracker host=%s port=%s url=%s",
        host,
        port,
        config.transport.url,
        extra={"component": "startup", "operation": "serve", "result": "started"},
    )
    app = create_app(build_tracker(config))
    uvicorn.run(app, host=host, port=port, log_level=normalized_log_level)


if __name__ == "__main__":
    cli()
