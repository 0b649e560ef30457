from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import Any

import aiohttp
import pytest

from tracker_core.errors import TransportError
from ops_tracker.events import EventEmitter
from ops_tracker.registry import OperationRegistry
from ops_tracker.router import EventRouter
from ops_tracker.transport import (
    EventTransport,
    TransportState,
    reconnect_delay_ms,
)


class FakeWebSocket:
    def __init__(self, *, final_code: int = 1006) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._final_code = final_code
        self.close_code: int | None = None
        self.closed = False
        self.sent: list[str] = []

    def push_text(self, data: str) -> None:
        self._queue.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=data))

    def drop(self) -> None:
        self._queue.put_nowait(None)

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is None:
            self.closed = True
            if self.close_code is None:
                self.close_code = self._final_code
            raise StopAsyncIteration
        return item

    async def send_str(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> bool:
        if self.close_code is None:
            self.close_code = 1000
        self.closed = True
        self._queue.put_nowait(None)
        return True

    def exception(self) -> BaseException | None:
        return None


class FakeSession:
    def __init__(self, outcomes: list[Any]) -> None:
        self._outcomes = list(outcomes)
        self.closed = False
        self.urls: list[str] = []

    async def ws_connect(self, url: str, **_kwargs: Any) -> FakeWebSocket:
        self.urls.append(url)
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def close(self) -> None:
        self.closed = True


async def _wait_for(predicate, attempts: int = 100) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def _transport(scheduler, *, session: FakeSession | None = None, events: EventEmitter | None = None, routed=None):
    return EventTransport(
        "ws://backend.test:5001",
        events=events or EventEmitter(name="transport"),
        on_text=(routed.append if routed is not None else (lambda _raw: None)),
        scheduler=scheduler,
        session_factory=(lambda: session) if session is not None else None,
    )


def test_reconnect_delay_doubles_per_attempt() -> None:
    assert [reconnect_delay_ms(attempt) for attempt in range(1, 6)] == [1000, 2000, 4000, 8000, 16000]


def test_unclean_closes_back_off_and_stop_after_five_attempts(scheduler) -> None:
    transport = _transport(scheduler)

    for _ in range(7):
        transport._handle_close(code=1006, clean=False)

    assert scheduler.delays == [1000, 2000, 4000, 8000, 16000]
    assert transport.reconnect_attempts == 5
    assert transport.state is TransportState.DISCONNECTED


def test_clean_close_does_not_reconnect(scheduler) -> None:
    events = EventEmitter()
    closes: list[dict] = []
    events.on("disconnected", closes.append)
    transport = _transport(scheduler, events=events)

    transport._handle_close(code=1000, clean=True)

    assert scheduler.timers == []
    assert closes == [{"code": 1000, "clean": True}]


@pytest.mark.asyncio
async def test_disconnect_suppresses_later_reconnects(scheduler) -> None:
    transport = _transport(scheduler)
    transport._handle_close(code=1006, clean=False)
    assert transport.reconnect_pending is True

    await transport.disconnect()
    transport._handle_close(code=1006, clean=False)

    assert scheduler.delays == [1000]
    assert scheduler.timers[0].cancelled is True
    assert transport.reconnect_pending is False


@pytest.mark.asyncio
async def test_connect_routes_frames_and_resets_attempts(scheduler) -> None:
    ws = FakeWebSocket()
    session = FakeSession([ws])
    routed: list[str] = []
    events = EventEmitter()
    lifecycle: list[str] = []
    events.on("connected", lambda _payload: lifecycle.append("connected"))
    events.on("disconnected", lambda payload: lifecycle.append(f"disconnected:{payload['code']}"))
    transport = _transport(scheduler, session=session, events=events, routed=routed)
    transport._reconnect_attempts = 3

    transport.connect()
    transport.connect()
    assert transport.state is TransportState.CONNECTING
    await _wait_for(lambda: transport.state is TransportState.CONNECTED)

    assert transport.reconnect_attempts == 0
    ws.push_text('{"type": "operation_log"}')
    ws.push_text('{"type": "project_update"}')
    await _wait_for(lambda: len(routed) == 2)
    assert routed == ['{"type": "operation_log"}', '{"type": "project_update"}']

    ws.drop()
    await _wait_for(lambda: transport.state is TransportState.DISCONNECTED)
    assert lifecycle == ["connected", "disconnected:1006"]
    assert scheduler.delays == [1000]
    assert session.urls == ["ws://backend.test:5001"]


@pytest.mark.asyncio
async def test_backend_graceful_close_does_not_reconnect(scheduler) -> None:
    ws = FakeWebSocket(final_code=1000)
    transport = _transport(scheduler, session=FakeSession([ws]))

    transport.connect()
    await _wait_for(lambda: transport.state is TransportState.CONNECTED)
    ws.drop()
    await _wait_for(lambda: transport.state is TransportState.DISCONNECTED)

    assert scheduler.timers == []


@pytest.mark.asyncio
async def test_connect_failure_goes_through_reconnect_path(scheduler) -> None:
    events = EventEmitter()
    errors: list[object] = []
    events.on("error", errors.append)
    second = FakeWebSocket()
    session = FakeSession([aiohttp.ClientConnectionError("refused"), second])
    transport = _transport(scheduler, session=session, events=events)

    transport.connect()
    await _wait_for(lambda: scheduler.timers != [])

    assert transport.state is TransportState.DISCONNECTED
    assert len(errors) == 1
    assert isinstance(errors[0], TransportError)
    assert errors[0].context == {"url": "ws://backend.test:5001"}
    assert isinstance(errors[0].__cause__, aiohttp.ClientConnectionError)
    assert scheduler.delays == [1000]

    scheduler.timers[0].fire()
    await _wait_for(lambda: transport.state is TransportState.CONNECTED)
    assert transport.reconnect_attempts == 0
    await transport.close()
    assert session.closed is True


@pytest.mark.asyncio
async def test_send_only_when_connected(scheduler) -> None:
    events = EventEmitter()
    dropped: list[dict] = []
    events.on("send_dropped", dropped.append)
    ws = FakeWebSocket()
    transport = _transport(scheduler, session=FakeSession([ws]), events=events)

    assert await transport.subscribe_logs("proj1") is False
    assert dropped == [{"type": "subscribe_logs", "targetId": "proj1"}]

    transport.connect()
    await _wait_for(lambda: transport.state is TransportState.CONNECTED)
    assert await transport.subscribe_logs("proj1") is True
    assert await transport.send_terminal_input("sess-1", "ls\n") is True
    assert [json.loads(item) for item in ws.sent] == [
        {"type": "subscribe_logs", "targetId": "proj1"},
        {"type": "terminal_input", "sessionId": "sess-1", "input": "ls\n"},
    ]

    await transport.disconnect()
    assert transport.state is TransportState.DISCONNECTED
    assert scheduler.timers == []
    assert await transport.send({"type": "ping"}) is False


class BlockingSession(FakeSession):
    def __init__(self) -> None:
        super().__init__([])
        self.started = asyncio.Event()

    async def ws_connect(self, url: str, **_kwargs: Any) -> FakeWebSocket:
        self.urls.append(url)
        self.started.set()
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


@pytest.mark.asyncio
async def test_disconnect_while_connecting_reports_disconnected(scheduler) -> None:
    events = EventEmitter()
    closes: list[dict] = []
    events.on("disconnected", closes.append)
    session = BlockingSession()
    transport = _transport(scheduler, session=session, events=events)

    transport.connect()
    await session.started.wait()
    assert transport.state is TransportState.CONNECTING
    await transport.disconnect()

    assert closes == [{"code": None, "clean": True}]
    assert transport.state is TransportState.DISCONNECTED
    assert scheduler.timers == []


@pytest.mark.asyncio
async def test_deeply_nested_frame_is_dropped_and_routing_continues(scheduler, clock) -> None:
    events = EventEmitter()
    registry = OperationRegistry(scheduler=scheduler, clock=clock)
    router = EventRouter(events=events, registry=registry)
    messages: list[str] = []
    events.on("message", lambda message: messages.append(message["type"]))
    ws = FakeWebSocket()
    transport = EventTransport(
        "ws://backend.test:5001",
        events=events,
        on_text=router.route,
        scheduler=scheduler,
        session_factory=lambda: FakeSession([ws]),
    )

    transport.connect()
    await _wait_for(lambda: transport.state is TransportState.CONNECTED)
    ws.push_text("[" * 200000)
    ws.push_text('{"type": "project_update"}')
    await _wait_for(lambda: messages == ["project_update"])

    assert transport.state is TransportState.CONNECTED
    assert scheduler.timers == []
    await transport.disconnect()


@pytest.mark.asyncio
async def test_receive_loop_failure_closes_and_reconnects(scheduler, caplog: pytest.LogCaptureFixture) -> None:
    events = EventEmitter()
    closes: list[dict] = []
    errors: list[object] = []
    events.on("disconnected", closes.append)
    events.on("error", errors.append)
    ws = FakeWebSocket()

    def _explode(_raw: str) -> None:
        raise RuntimeError("handler exploded")

    transport = EventTransport(
        "ws://backend.test:5001",
        events=events,
        on_text=_explode,
        scheduler=scheduler,
        session_factory=lambda: FakeSession([ws]),
    )

    transport.connect()
    await _wait_for(lambda: transport.state is TransportState.CONNECTED)
    ws.push_text('{"type": "project_update"}')
    await _wait_for(lambda: transport.state is TransportState.DISCONNECTED)

    assert closes == [{"code": 1000, "clean": False}]
    assert isinstance(errors[0], TransportError)
    assert isinstance(errors[0].__cause__, RuntimeError)
    assert ws.closed is True
    assert scheduler.delays == [1000]
    assert "Event channel receive loop failed" in caplog.text
