from __future__ import annotations

import json
import logging

import pytest

from tracker_core.errors import MessageDecodeError
from ops_tracker.events import EventEmitter
from ops_tracker.registry import OperationRegistry
from ops_tracker.router import EventRouter, decode_message


@pytest.fixture
def wiring(scheduler, clock) -> tuple[EventEmitter, OperationRegistry, EventRouter]:
    events = EventEmitter()
    registry = OperationRegistry(scheduler=scheduler, clock=clock)
    return events, registry, EventRouter(events=events, registry=registry)


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        json.dumps({"operationId": "start-x"}),
        json.dumps({"type": ""}),
        json.dumps({"type": 5}),
        b"\xff\xfe",
    ],
)
def test_decode_message_rejects_malformed_frames(raw: str | bytes) -> None:
    with pytest.raises(MessageDecodeError):
        decode_message(raw)


def test_decode_message_rejects_deeply_nested_frame() -> None:
    with pytest.raises(MessageDecodeError, match="nested too deeply"):
        decode_message("[" * 200000)


def test_route_drops_deeply_nested_frame_and_keeps_routing(wiring) -> None:
    events, _registry, router = wiring
    seen: list[str] = []
    events.on("message", lambda message: seen.append(message["type"]))

    assert router.route("[" * 200000) is None
    assert router.route(json.dumps({"type": "project_update"})) == {"type": "project_update"}
    assert seen == ["project_update"]


def test_decode_message_accepts_bytes() -> None:
    assert decode_message(b'{"type": "project_update"}') == {"type": "project_update"}


def test_route_emits_message_then_type_and_forwards_operation_events(wiring) -> None:
    events, registry, router = wiring
    operation = registry.start("start", "proj1")
    seen: list[tuple[str, object]] = []
    events.on("message", lambda message: seen.append(("message", operation.current_step_index)))
    events.on("operation_step", lambda message: seen.append(("operation_step", operation.current_step_index)))

    router.route(json.dumps({"type": "operation_step", "operationId": "start-proj1", "step": 1, "progress": 25}))

    # generic "message" fires before the registry update, the typed event after it
    assert seen == [("message", 0), ("operation_step", 1)]
    assert operation.progress == 25


def test_route_passes_through_unknown_types(wiring) -> None:
    events, registry, router = wiring
    updates: list[dict] = []
    events.on("project_update", updates.append)

    message = router.route(json.dumps({"type": "project_update", "projectId": "p1"}))

    assert message == {"type": "project_update", "projectId": "p1"}
    assert updates == [message]
    assert len(registry) == 0


def test_route_drops_undecodable_message(wiring, caplog: pytest.LogCaptureFixture) -> None:
    events, _registry, router = wiring
    seen: list[object] = []
    events.on("message", seen.append)

    with caplog.at_level(logging.WARNING, logger="ops_tracker.router"):
        assert router.route("{broken") is None

    assert seen == []
    assert "Dropping undecodable message" in caplog.text


def test_routing_preserves_arrival_order(wiring) -> None:
    events, registry, router = wiring
    operation = registry.start("create", "proj1")
    order: list[str] = []
    events.on("message", lambda message: order.append(str(message.get("seq"))))

    for seq in range(5):
        router.route(
            json.dumps(
                {"type": "operation_log", "operationId": "create-proj1", "message": f"log {seq}", "seq": seq}
            )
        )

    assert order == ["0", "1", "2", "3", "4"]
    assert [entry.message for entry in operation.logs] == [f"log {seq}" for seq in range(5)]


def test_registry_failure_does_not_block_typed_emit(wiring, monkeypatch: pytest.MonkeyPatch) -> None:
    events, registry, router = wiring

    def _boom(_message: object) -> None:
        raise RuntimeError("registry bug")

    monkeypatch.setattr(registry, "handle_backend_event", _boom)
    seen: list[object] = []
    events.on("operation_log", seen.append)

    router.route(json.dumps({"type": "operation_log", "operationId": "start-x", "message": "m"}))

    assert len(seen) == 1
