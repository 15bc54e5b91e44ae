"""
Tests for the realtime WebSocket session against a local aiohttp hub.

The hub runs on its own event loop thread and listens on an ephemeral
127.0.0.1 port; the session is pointed at it via GRUENBECK_SIGNALR_BASE_URL.
"""

from __future__ import annotations

import asyncio
import socket
import threading
import time
from typing import Callable, Optional

import pytest
from aiohttp import WSMsgType, web

from gruenbeck_cloud.errors import TransportError
from gruenbeck_cloud.realtime.events import HANDSHAKE_FRAME
from gruenbeck_cloud.realtime.websocket import RealtimeWebSocketSession, SessionState

TELEMETRY_FRAME = '{"type":1,"target":"SendMessageToDevice","arguments":[{"mflow1":0,"mtemp":21.5}]}'


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _io_threads(before: frozenset = frozenset()) -> list[str]:
    return [t.name for t in threading.enumerate() if t.name.startswith("gruenbeck-ws-") and t not in before]


def _closed_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


class HubServer:
    def __init__(self) -> None:
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, name="test-hub", daemon=True)
        self.frames_to_send: list[str] = []
        self.close_after_send = False
        self.handshakes: list[str] = []
        self.queries: list[dict] = []
        self.user_agents: list[str] = []
        self.client_gone = threading.Event()
        self.port: Optional[int] = None
        self._runner: Optional[web.AppRunner] = None

    async def _hub(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.queries.append(dict(request.query))
        self.user_agents.append(request.headers.get("User-Agent", ""))
        msg = await ws.receive()
        if msg.type == WSMsgType.TEXT:
            self.handshakes.append(msg.data)
        for frame in self.frames_to_send:
            await ws.send_str(frame)
        if self.close_after_send:
            await ws.close(code=4000, message=b"server going away")
        else:
            async for _ in ws:
                pass
        self.client_gone.set()
        return ws

    async def _start(self) -> None:
        app = web.Application()
        app.router.add_get("/client/", self._hub)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        self.port = sock.getsockname()[1]
        await web.SockSite(self._runner, sock).start()

    def start(self) -> None:
        self.thread.start()
        asyncio.run_coroutine_threadsafe(self._start(), self.loop).result(10)

    def stop(self) -> None:
        if self._runner is not None:
            asyncio.run_coroutine_threadsafe(self._runner.cleanup(), self.loop).result(10)
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(5)


class RecordingListener:
    def __init__(self) -> None:
        self.events: list[str] = []
        self.errors: list[BaseException] = []
        self.closed: list[tuple] = []

    def on_event(self, message, device) -> None:  # noqa: ANN001 - listener protocol
        self.events.append(message)

    def on_error(self, cause, device) -> None:  # noqa: ANN001 - listener protocol
        self.errors.append(cause)

    def connection_closed(self, device, code, reason) -> None:  # noqa: ANN001 - listener protocol
        self.closed.append((device, code, reason))


@pytest.fixture
def hub(monkeypatch):
    server = HubServer()
    server.start()
    monkeypatch.setenv("GRUENBECK_SIGNALR_BASE_URL", f"http://127.0.0.1:{server.port}/client")
    monkeypatch.delenv("GRUENBECK_SIGNALR_HUB", raising=False)
    yield server
    server.stop()


def _session(device, listener, log, **kwargs) -> RealtimeWebSocketSession:  # noqa: ANN001
    return RealtimeWebSocketSession("conn-1", "hub-token", device, listener, log=log, connect_timeout=5.0, **kwargs)


def test_handshake_then_records_are_forwarded(hub, device, log) -> None:
    hub.frames_to_send = [TELEMETRY_FRAME + "\x1e" + '{"type":6}' + "\x1e"]
    listener = RecordingListener()
    session = _session(device, listener, log)

    session.start()
    try:
        assert session.state == SessionState.OPEN
        assert session.is_running()
        assert _wait_for(lambda: len(listener.events) == 2)
    finally:
        session.stop()

    assert hub.handshakes == [HANDSHAKE_FRAME]
    assert hub.queries == [{"hub": "gruenbeck", "id": "conn-1", "access_token": "hub-token"}]
    assert hub.user_agents[0].startswith("Gruenbeck/")
    assert listener.events == [TELEMETRY_FRAME, '{"type":6}']
    assert session.state == SessionState.CLOSED
    assert session.closing is True
    assert not session.is_running()
    assert hub.client_gone.wait(5)


def test_server_close_is_reported(hub, device, log) -> None:
    hub.close_after_send = True
    listener = RecordingListener()
    session = _session(device, listener, log)

    session.start()
    try:
        assert _wait_for(lambda: bool(listener.closed))
        assert listener.closed[0] == (device, 4000, "server going away")
        assert session.state == SessionState.CLOSED
        assert not session.is_running()
    finally:
        session.stop()


def test_idle_timeout_closes_the_session(hub, device, log) -> None:
    listener = RecordingListener()
    session = _session(device, listener, log, idle_timeout=0.5)

    session.start()
    try:
        assert _wait_for(lambda: bool(listener.closed))
        _, _, reason = listener.closed[0]
        assert reason == "idle timeout"
        assert session.state == SessionState.CLOSED
    finally:
        session.stop()
    assert hub.client_gone.wait(5)


def test_connect_failure_releases_the_io_thread(monkeypatch, device, log) -> None:
    monkeypatch.setenv("GRUENBECK_SIGNALR_BASE_URL", f"http://127.0.0.1:{_closed_port()}/client")
    before = frozenset(threading.enumerate())

    for _ in range(3):
        session = _session(device, RecordingListener(), log)
        with pytest.raises(TransportError):
            session.start()
        assert session.state == SessionState.CLOSED
        assert not session.is_running()

    assert _wait_for(lambda: _io_threads(before) == [])


def test_restart_replaces_the_socket_on_the_same_client(hub, device, log) -> None:
    before = frozenset(threading.enumerate())
    listener = RecordingListener()
    session = _session(device, listener, log)

    session.start()
    try:
        first = session._ws  # noqa: SLF001 - inspect the replaced socket
        session.start()

        assert first is not None and first.closed
        assert session._ws is not first  # noqa: SLF001
        assert session.is_running()
        assert _io_threads(before) == [f"gruenbeck-ws-{device.serial_number}"]
        assert _wait_for(lambda: len(hub.handshakes) == 2)
    finally:
        session.stop()
    assert _wait_for(lambda: _io_threads(before) == [])


def test_failing_error_and_close_listeners_are_contained(device, log) -> None:
    class Broken(RecordingListener):
        def on_error(self, cause, device) -> None:  # noqa: ANN001
            raise RuntimeError("listener bug")

        def connection_closed(self, device, code, reason) -> None:  # noqa: ANN001
            raise RuntimeError("listener bug")

    session = _session(device, Broken(), log)

    session.on_error(TransportError("socket reset"))
    session.on_close(1006, "")

    assert session.state == SessionState.CLOSED


def test_messages_are_dropped_while_closing(device, log) -> None:
    listener = RecordingListener()
    session = _session(device, listener, log)

    session.closing = True
    session.on_message(TELEMETRY_FRAME + "\x1e")
    assert listener.events == []

    session.closing = False
    session.on_message("\x1e\r\n" + TELEMETRY_FRAME + "\r\n\x1e")
    assert listener.events == [TELEMETRY_FRAME]


def test_listener_failure_does_not_escape_on_message(device, log) -> None:
    class Broken(RecordingListener):
        def on_event(self, message, device) -> None:  # noqa: ANN001
            raise RuntimeError("listener bug")

    session = _session(device, Broken(), log)

    session.on_message(TELEMETRY_FRAME)


def test_stop_without_start_is_a_no_op(device, log) -> None:
    session = _session(device, RecordingListener(), log)

    session.stop()

    assert session.state == SessionState.CLOSED
    assert session.closing is True
