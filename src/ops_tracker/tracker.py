from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import aiohttp

from tracker_core.config import TrackerConfig

from ops_tracker.events import EventEmitter
from ops_tracker.models import Operation, resolve_templates
from ops_tracker.refresh import ProjectsRefresher
from ops_tracker.registry import OperationRegistry
from ops_tracker.router import EventRouter
from ops_tracker.scheduler import Scheduler
from ops_tracker.transport import EventTransport


LOGGER = logging.getLogger("ops_tracker")
LOGGER.addHandler(logging.NullHandler())


@dataclass
class OperationTracker:
    """One process-scoped set of transport, router, registry and refresher."""

    config: TrackerConfig
    events: EventEmitter
    registry: OperationRegistry
    router: EventRouter
    transport: EventTransport
    refresher: ProjectsRefresher | None = None

    def start(self) -> None:
        self.transport.connect()

    async def stop(self) -> None:
        await self.transport.close()
        self.registry.close()
        if self.refresher is not None:
            await self.refresher.close()

    async def start_operation(self, kind: str, target_id: str, target_name: str = "", **options: Any) -> Operation:
        operation = self.registry.start(kind, target_id, target_name, **options)
        await self.transport.subscribe_logs(operation.target_id)
        return operation


def build_tracker(
    config: TrackerConfig | None = None,
    *,
    scheduler: Scheduler | None = None,
    session_factory: Callable[[], aiohttp.ClientSession] | None = None,
    on_projects: Callable[[Any], None] | None = None,
) -> OperationTracker:
    resolved = config or TrackerConfig()
    refresher: ProjectsRefresher | None = None
    if resolved.refresh.api_base:
        refresher = ProjectsRefresher(
            resolved.refresh.api_base,
            on_projects=on_projects,
            session_factory=session_factory,
        )

    events = EventEmitter(name="transport")
    registry = OperationRegistry(
        scheduler=scheduler,
        templates=resolve_templates(resolved.operations),
        log_capacity=resolved.logs.capacity,
        success_grace_ms=resolved.registry.success_grace_ms,
        failure_grace_ms=resolved.registry.failure_grace_ms,
        refresh_delay_ms=resolved.registry.refresh_delay_ms,
        refresh=refresher,
    )
    router = EventRouter(events=events, registry=registry)
    transport = EventTransport(
        resolved.transport.url,
        events=events,
        on_text=router.route,
        scheduler=scheduler,
        session_factory=session_factory,
        base_delay_ms=resolved.transport.base_delay_ms,
        max_reconnect_attempts=resolved.transport.max_reconnect_attempts,
        heartbeat_s=resolved.transport.heartbeat_s,
    )
    LOGGER.debug(
        "Built operation tracker url=%s refresh=%s",
        resolved.transport.url,
        bool(refresher),
        extra={"component": "tracker", "operation": "build", "result": "ok"},
    )
    return OperationTracker(
        config=resolved,
        events=events,
        registry=registry,
        router=router,
        transport=transport,
        refresher=refresher,
    )
