from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

import aiohttp

from tracker_core.errors import TransportError

from ops_tracker.events import EventEmitter, EventHandler
from ops_tracker.scheduler import LoopScheduler, Scheduler, TimerHandle


LOGGER = logging.getLogger("ops_tracker.transport")

EVENT_CONNECTED = "connected"
EVENT_DISCONNECTED = "disconnected"
EVENT_ERROR = "error"
EVENT_SEND_DROPPED = "send_dropped"

DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_HEARTBEAT_S = 30.0
CLEAN_CLOSE_CODES = frozenset({int(aiohttp.WSCloseCode.OK), int(aiohttp.WSCloseCode.GOING_AWAY)})


class TransportState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def reconnect_delay_ms(attempt: int, base_delay_ms: int = DEFAULT_BASE_DELAY_MS) -> int:
    return int(base_delay_ms) * 2 ** (max(1, int(attempt)) - 1)


def _transport_extra(action: str, result: str, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"component": "transport", "operation": action, "result": result}
    payload.update(extra)
    return payload


class EventTransport:
    """One logical websocket connection to the backend event source.

    Unclean closes are retried with exponential backoff up to
    ``max_reconnect_attempts`` consecutive attempts. A ``disconnect()`` or a
    graceful close from the backend stops reconnection. Outbound messages
    are only sent while connected; there is no outbound queue.
    """

    def __init__(
        self,
        url: str,
        *,
        events: EventEmitter,
        on_text: Callable[[str | bytes], Any],
        scheduler: Scheduler | None = None,
        session_factory: Callable[[], aiohttp.ClientSession] | None = None,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        heartbeat_s: float | None = DEFAULT_HEARTBEAT_S,
    ) -> None:
        self.url = str(url)
        self._events = events
        self._on_text = on_text
        self._scheduler = scheduler or LoopScheduler()
        self._session_factory = session_factory or aiohttp.ClientSession
        self._base_delay_ms = int(base_delay_ms)
        self._max_reconnect_attempts = int(max_reconnect_attempts)
        self._heartbeat_s = heartbeat_s or None
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._task: asyncio.Task[None] | None = None
        self._reconnect_handle: TimerHandle | None = None
        self._reconnect_attempts = 0
        self._manual_close = False
        self._state = TransportState.DISCONNECTED

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def on(self, event_name: str, handler: EventHandler) -> None:
        self._events.on(event_name, handler)

    def off(self, event_name: str, handler: EventHandler) -> None:
        self._events.off(event_name, handler)

    def connect(self) -> None:
        if self._state is not TransportState.DISCONNECTED:
            return
        self._manual_close = False
        self._reconnect_attempts = 0
        self._cancel_reconnect()
        self._open()

    def _open(self) -> None:
        self._state = TransportState.CONNECTING
        LOGGER.info(
            "Connecting to event channel url=%s attempt=%d",
            self.url,
            self._reconnect_attempts,
            extra=_transport_extra("connect", "connecting"),
        )
        self._task = asyncio.get_running_loop().create_task(self._run())

    def _reconnect_now(self) -> None:
        self._reconnect_handle = None
        if self._manual_close or self._state is not TransportState.DISCONNECTED:
            return
        self._open()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = self._session_factory()
        return self._session

    async def _run(self) -> None:
        try:
            session = self._ensure_session()
            ws = await session.ws_connect(self.url, heartbeat=self._heartbeat_s)
        except asyncio.CancelledError:
            self._state = TransportState.DISCONNECTED
            LOGGER.info("Event channel connect cancelled", extra=_transport_extra("connect", "cancelled"))
            self._events.emit(EVENT_DISCONNECTED, {"code": None, "clean": True})
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
            LOGGER.warning(
                "Event channel connect failed: %s",
                exc,
                extra=_transport_extra("connect", "failed", error_class=type(exc).__name__),
            )
            error = TransportError(f"Event channel connect failed: {exc}", url=self.url)
            error.__cause__ = exc
            self._events.emit(EVENT_ERROR, error)
            self._handle_close(code=None, clean=False)
            return

        if self._manual_close:
            await ws.close()
            self._handle_close(code=ws.close_code, clean=True)
            return

        self._ws = ws
        self._state = TransportState.CONNECTED
        self._reconnect_attempts = 0
        LOGGER.info("Event channel connected url=%s", self.url, extra=_transport_extra("connect", "connected"))
        self._events.emit(EVENT_CONNECTED, None)

        try:
            await self._receive(ws)
        except Exception as exc:
            LOGGER.exception(
                "Event channel receive loop failed",
                extra=_transport_extra("receive", "failed", error_class=type(exc).__name__),
            )
            error = TransportError(f"Event channel receive loop failed: {exc}", url=self.url)
            error.__cause__ = exc
            self._events.emit(EVENT_ERROR, error)
            if not ws.closed:
                await ws.close()
            self._handle_close(code=ws.close_code, clean=self._manual_close)
            return

        code = ws.close_code
        self._handle_close(code=code, clean=self._manual_close or code in CLEAN_CLOSE_CODES)

    async def _receive(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                self._on_text(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                frame_error = ws.exception()
                LOGGER.warning(
                    "Event channel error frame: %s",
                    frame_error,
                    extra=_transport_extra("receive", "error", error_class=type(frame_error).__name__),
                )
                self._events.emit(
                    EVENT_ERROR,
                    TransportError(f"Event channel error frame: {frame_error}", url=self.url, close_code=ws.close_code),
                )

    def _handle_close(self, *, code: int | None, clean: bool) -> None:
        self._state = TransportState.DISCONNECTED
        self._ws = None
        LOGGER.info(
            "Event channel closed code=%s clean=%s",
            code,
            clean,
            extra=_transport_extra("close", "clean" if clean else "unclean"),
        )
        self._events.emit(EVENT_DISCONNECTED, {"code": code, "clean": clean})
        if clean or self._manual_close:
            return
        if self._reconnect_attempts >= self._max_reconnect_attempts:
            LOGGER.warning(
                "Giving up on event channel after %d reconnect attempts",
                self._reconnect_attempts,
                extra=_transport_extra("reconnect", "exhausted"),
            )
            return
        self._reconnect_attempts += 1
        delay_ms = reconnect_delay_ms(self._reconnect_attempts, self._base_delay_ms)
        LOGGER.info(
            "Reconnecting event channel in %dms (attempt %d)",
            delay_ms,
            self._reconnect_attempts,
            extra=_transport_extra("reconnect", "scheduled", duration_ms=delay_ms),
        )
        self._reconnect_handle = self._scheduler.call_later(delay_ms, self._reconnect_now)

    async def send(self, payload: dict[str, Any]) -> bool:
        text = json.dumps(payload)
        ws = self._ws
        if self._state is not TransportState.CONNECTED or ws is None or ws.closed:
            LOGGER.warning(
                "Event channel not connected; dropping outbound message type=%s",
                payload.get("type"),
                extra=_transport_extra("send", "dropped"),
            )
            self._events.emit(EVENT_SEND_DROPPED, payload)
            return False
        try:
            await ws.send_str(text)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            LOGGER.warning(
                "Event channel send failed: %s",
                exc,
                extra=_transport_extra("send", "dropped", error_class=type(exc).__name__),
            )
            self._events.emit(EVENT_SEND_DROPPED, payload)
            return False
        return True

    async def subscribe_logs(self, target_id: str) -> bool:
        return await self.send({"type": "subscribe_logs", "targetId": str(target_id)})

    async def send_terminal_input(self, session_id: str, data: str) -> bool:
        return await self.send({"type": "terminal_input", "sessionId": str(session_id), "input": str(data)})

    async def disconnect(self) -> None:
        self._manual_close = True
        self._cancel_reconnect()
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()
        task = self._task
        if task is not None and not task.done():
            if self._state is TransportState.CONNECTING:
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._task = None
        self._state = TransportState.DISCONNECTED

    async def close(self) -> None:
        await self.disconnect()
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()
