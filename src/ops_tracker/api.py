from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import partial
from typing import Any

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse

from tracker_core.errors import OperationNotFoundError, TrackerError, typed_error_payload

from ops_tracker.models import Operation
from ops_tracker.registry import REGISTRY_EVENT_LOG, REGISTRY_EVENT_REMOVED, REGISTRY_EVENT_TYPES, OperationRegistry
from ops_tracker.tracker import OperationTracker


LOGGER = logging.getLogger("ops_tracker.api")

EVENT_TYPE_SNAPSHOT = "snapshot"
EVENT_QUEUE_MAX = 256


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error_payload(exc: BaseException) -> tuple[int, dict[str, Any]]:
    typed_payload = typed_error_payload(exc)
    if typed_payload is not None:
        return int(getattr(exc, "http_status", 500)), typed_payload
    return 500, {"error_code": "INTERNAL_ERROR", "detail": str(exc)}


def _registry_event_payload(event_type: str, value: Any) -> dict[str, Any]:
    if event_type == REGISTRY_EVENT_LOG:
        operation, entry = value
        return {"operation_id": operation.id, "entry": entry.to_payload()}
    if event_type == REGISTRY_EVENT_REMOVED:
        return {"operation_id": value.id}
    return {"operation": value.to_payload()}


class RegistryEventStream:
    """Fans registry changes out to websocket listeners as JSON-ready dicts."""

    def __init__(self, registry: OperationRegistry, *, max_queue: int = EVENT_QUEUE_MAX) -> None:
        self._registry = registry
        self._max_queue = int(max_queue)
        self._listeners: set[asyncio.Queue[dict[str, Any] | None]] = set()
        for event_type in REGISTRY_EVENT_TYPES:
            registry.events.on(event_type, partial(self._broadcast, event_type))

    def attach(self) -> asyncio.Queue[dict[str, Any] | None]:
        listener: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=self._max_queue)
        self._listeners.add(listener)
        return listener

    def detach(self, listener: asyncio.Queue[dict[str, Any] | None]) -> None:
        self._listeners.discard(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def snapshot(self) -> dict[str, Any]:
        return {"operations": [operation.to_payload() for operation in self._registry.operations()]}

    @staticmethod
    def queue_put(listener: asyncio.Queue[dict[str, Any] | None], value: dict[str, Any] | None) -> None:
        # Slow listeners lose their oldest pending event.
        try:
            listener.put_nowait(value)
            return
        except asyncio.QueueFull:
            pass
        try:
            listener.get_nowait()
        except asyncio.QueueEmpty:
            return
        try:
            listener.put_nowait(value)
        except asyncio.QueueFull:
            return

    def _broadcast(self, event_type: str, value: Any) -> None:
        event = {"type": event_type, "payload": _registry_event_payload(event_type, value), "sent_at": _iso_now()}
        for listener in list(self._listeners):
            self.queue_put(listener, event)


def register_tracker_routes(app: FastAPI, *, tracker: OperationTracker, stream: RegistryEventStream) -> None:
    registry = tracker.registry
    # Handlers stay async so registry access happens on the event loop thread.

    def _operation_or_404(operation_id: str) -> Operation:
        operation = registry.get(operation_id)
        if operation is None:
            raise OperationNotFoundError(f"Unknown operation: {operation_id}", operation_id=operation_id)
        return operation

    @app.get("/api/operations")
    async def api_operations() -> dict[str, Any]:
        return {"operations": [operation.to_payload() for operation in registry.operations()]}

    @app.post("/api/operations")
    async def api_start_operation(request: Request) -> dict[str, Any]:
        payload = await request.json()
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON payload.")
        kind = str(payload.get("kind") or "").strip()
        target_id = str(payload.get("targetId") or payload.get("target_id") or "").strip()
        target_name = str(payload.get("targetName") or payload.get("target_name") or "")
        try:
            operation = await tracker.start_operation(kind, target_id, target_name)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"operation": operation.to_payload()}

    @app.post("/api/operations/clear-completed")
    async def api_clear_completed() -> dict[str, Any]:
        return {"removed": registry.clear_completed()}

    @app.get("/api/operations/{operation_id}")
    async def api_operation(operation_id: str) -> dict[str, Any]:
        return {"operation": _operation_or_404(operation_id).to_payload()}

    @app.delete("/api/operations/{operation_id}")
    async def api_dismiss_operation(operation_id: str) -> dict[str, Any]:
        _operation_or_404(operation_id)
        registry.remove(operation_id)
        return {"removed": operation_id}

    @app.get("/api/operations/{operation_id}/logs")
    async def api_operation_logs(operation_id: str) -> PlainTextResponse:
        operation = _operation_or_404(operation_id)
        filename = operation.logs.export_filename()
        return PlainTextResponse(
            operation.logs.export(),
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.get("/api/transport")
    async def api_transport() -> dict[str, Any]:
        return {
            "url": tracker.transport.url,
            "state": tracker.transport.state.value,
            "reconnect_attempts": tracker.transport.reconnect_attempts,
        }

    @app.websocket("/api/operations/events")
    async def ws_operation_events(websocket: WebSocket) -> None:
        await websocket.accept()
        listener: asyncio.Queue[dict[str, Any] | None] | None = None
        tasks: set[asyncio.Task[None]] = set()

        async def stream_events(queue: asyncio.Queue[dict[str, Any] | None]) -> None:
            while True:
                event = await queue.get()
                if event is None:
                    break
                await websocket.send_text(json.dumps(event))

        async def consume_input() -> None:
            while True:
                try:
                    message = await websocket.receive_text()
                except WebSocketDisconnect:
                    return
                try:
                    payload = json.loads(message) if message else None
                except json.JSONDecodeError:
                    continue
                if isinstance(payload, dict) and str(payload.get("type") or "") == "ping":
                    await websocket.send_text(
                        json.dumps({"type": "pong", "payload": {"at": _iso_now()}, "sent_at": _iso_now()})
                    )

        try:
            listener = stream.attach()
            LOGGER.debug("Operation events websocket connected.")
            await websocket.send_text(
                json.dumps({"type": EVENT_TYPE_SNAPSHOT, "payload": stream.snapshot(), "sent_at": _iso_now()})
            )
            tasks = {asyncio.create_task(stream_events(listener)), asyncio.create_task(consume_input())}
            done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc and not isinstance(exc, WebSocketDisconnect):
                    raise exc
        except WebSocketDisconnect:
            pass
        finally:
            if listener is not None:
                stream.detach(listener)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            LOGGER.debug("Operation events websocket disconnected.")


def create_app(tracker: OperationTracker) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        tracker.start()
        try:
            yield
        finally:
            await tracker.stop()

    app = FastAPI(lifespan=lifespan)
    app.state.tracker = tracker
    stream = RegistryEventStream(tracker.registry)
    app.state.event_stream = stream

    @app.exception_handler(TrackerError)
    async def _handle_tracker_error(_request: Request, exc: TrackerError) -> JSONResponse:
        status, payload = _error_payload(exc)
        return JSONResponse(status_code=status, content=payload)

    register_tracker_routes(app, tracker=tracker, stream=stream)
    return app
