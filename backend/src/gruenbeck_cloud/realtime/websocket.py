"""
Realtime hub WebSocket session.

The socket is driven by aiohttp on a private asyncio loop that runs on its own
daemon I/O thread (`_TransportClient`). The public `RealtimeWebSocketSession`
API (`start`, `stop`, `is_running`) is blocking and called from scheduler
threads; the handler methods `on_open`, `on_message`, `on_error` and
`on_close` are only ever invoked by the I/O loop and must not block.

    DISCONNECTED -> CONNECTING -> OPEN -> CLOSING -> CLOSED

Errors are reported to the listener without a state change. The session never
reconnects on its own; the negotiator builds a new one on its next tick.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import enum
import logging
import threading
from typing import Any, Awaitable, Callable, Optional, Protocol

import aiohttp
from aiohttp import WSMsgType

from .. import config as _config
from ..devices.models import Device
from ..errors import TransportError
from ..logging_utils import _sanitize_text, get_logger
from .events import HANDSHAKE_FRAME, clean_message, split_records

IDLE_TIMEOUT_SECONDS = 60.0
MAX_MESSAGE_SIZE = 64 * 1024
HANDSHAKE_TIMEOUT_SECONDS = 2.0

_TRANSPORT_FAILURES = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    concurrent.futures.TimeoutError,
    OSError,
)


class SessionState(str, enum.Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


class EventListener(Protocol):
    def on_event(self, message: str, device: Device) -> Any:
        ...

    def on_error(self, cause: BaseException, device: Device) -> None:
        ...

    def connection_closed(self, device: Device, code: Optional[int], reason: str) -> None:
        ...


class _TransportClient:
    """
    An asyncio loop on a daemon thread owning one `aiohttp.ClientSession`.
    """

    def __init__(self, *, name: str, log: logging.LoggerAdapter) -> None:
        self._log = log
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._stopped = False
        self.http: Optional[aiohttp.ClientSession] = None

    def _run(self) -> None:
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()

    async def _open(self) -> None:
        self.http = aiohttp.ClientSession()

    def start(self, timeout: float = 10.0) -> None:
        self._thread.start()
        self.call(self._open(), timeout=timeout)

    def in_loop_thread(self) -> bool:
        return threading.current_thread() is self._thread

    def call(self, coro: Awaitable[Any], timeout: float) -> Any:
        """Run `coro` on the I/O loop and block for its result."""
        fut = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return fut.result(timeout)
        except concurrent.futures.TimeoutError:
            fut.cancel()
            raise

    async def _shutdown(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in asyncio.all_tasks() if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self.http is not None:
            await self.http.close()
            self.http = None

    async def _shutdown_and_stop(self) -> None:
        await self._shutdown()
        self._loop.stop()

    def stop(self, timeout: float = 5.0) -> None:
        if self._stopped:
            return
        self._stopped = True
        if not self._thread.is_alive():
            return
        if self.in_loop_thread():
            self._loop.create_task(self._shutdown_and_stop())
            return
        try:
            self.call(self._shutdown(), timeout=timeout)
        except (concurrent.futures.TimeoutError, RuntimeError) as e:
            self._log.warning("transport shutdown did not complete cleanly: %s", e)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout)

    def is_stopped(self) -> bool:
        return self._stopped or not self._thread.is_alive()


ClientFactory = Callable[..., _TransportClient]


class RealtimeWebSocketSession:
    """
    One hub connection for one device.

    `connection_id` and `hub_token` come from the two-hop negotiation;
    `last_heartbeat` is stamped by the negotiator after each successful refresh.
    """

    def __init__(
        self,
        connection_id: str,
        hub_token: str,
        device: Device,
        listener: EventListener,
        *,
        log: Optional[logging.LoggerAdapter] = None,
        idle_timeout: float = IDLE_TIMEOUT_SECONDS,
        max_msg_size: int = MAX_MESSAGE_SIZE,
        handshake_timeout: float = HANDSHAKE_TIMEOUT_SECONDS,
        connect_timeout: float = 30.0,
        ssl_verify: bool = True,
        client_factory: ClientFactory = _TransportClient,
    ) -> None:
        self.connection_id = connection_id
        self.hub_token = hub_token
        self.device = device
        self.listener = listener
        self.last_heartbeat: Optional[float] = None
        self.state = SessionState.DISCONNECTED
        self.closing = False

        self._log = log or get_logger("gruenbeck_cloud.realtime")
        self._idle_timeout = idle_timeout
        self._max_msg_size = max_msg_size
        self._handshake_timeout = handshake_timeout
        self._connect_timeout = connect_timeout
        self._ssl_verify = ssl_verify
        self._client_factory = client_factory

        self._lock = threading.RLock()
        self._client: Optional[_TransportClient] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None

    # --- blocking API -----------------------------------------------------

    def start(self) -> None:
        """
        Connect and complete the handshake.

        Raises:
            TransportError: connect or handshake failed.
        """
        with self._lock:
            reused = True
            if self._client is None or self._client.is_stopped():
                self._client = self._client_factory(
                    name=f"gruenbeck-ws-{self.device.serial_number}", log=self._log
                )
                self._client.start()
                reused = False
            client = self._client

            if reused and self._ws is not None:
                self._log.debug("closing previous socket before reconnecting")
                self._call(client, self._close_ws(), what="close previous socket")

            self.closing = False
            self.state = SessionState.CONNECTING
            self._log.info("connecting realtime session for %s", self.device.serial_number)
            try:
                client.call(self._connect(client), timeout=self._connect_timeout)
            except TransportError:
                self._abort_start(client)
                raise
            except _TRANSPORT_FAILURES as e:
                self._abort_start(client)
                raise TransportError(
                    f"realtime connect failed: {type(e).__name__}: {_sanitize_text(str(e))}"
                ) from e

    def _abort_start(self, client: _TransportClient) -> None:
        # A failed connect owns no socket; release the I/O thread with it.
        self._ws = None
        self._client = None
        client.stop()
        self.state = SessionState.CLOSED

    def stop(self) -> None:
        """Set `closing`, close an open socket, then shut the transport client down."""
        with self._lock:
            self.closing = True
            client = self._client
            if client is not None and self.is_running():
                self._log.info("closing realtime session for %s", self.device.serial_number)
                self.state = SessionState.CLOSING
                self._call(client, self._close_ws(), what="close socket")
            else:
                self._log.debug("stopping realtime session ignored: not running")
            self._ws = None
            if client is not None:
                client.stop()
            self.state = SessionState.CLOSED

    def is_running(self) -> bool:
        ws = self._ws
        return ws is not None and not ws.closed and self.state == SessionState.OPEN

    def _call(self, client: _TransportClient, coro: Awaitable[Any], *, what: str) -> None:
        if client.is_stopped():
            coro.close()  # type: ignore[attr-defined]
            return
        try:
            client.call(coro, timeout=self._connect_timeout)
        except _TRANSPORT_FAILURES as e:
            self._log.warning("%s failed: %s", what, e)

    # --- I/O loop ------------------------------------------------------------

    async def _connect(self, client: _TransportClient) -> None:
        if client.http is None:
            raise TransportError("transport client has no HTTP session")
        url = _config.get_hub_websocket_url(self.connection_id, self.hub_token)
        ws = await client.http.ws_connect(
            url,
            max_msg_size=self._max_msg_size,
            ssl=self._ssl_verify,
            headers={"User-Agent": _config.HUB_USER_AGENT},
        )
        self._ws = ws
        self.state = SessionState.OPEN
        await self.on_open(ws)
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(ws))

    async def _close_ws(self) -> None:
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()
        reader = self._reader
        if reader is not None and not reader.done():
            await asyncio.wait([reader], timeout=self._handshake_timeout)
            if not reader.done():
                reader.cancel()
        self._reader = None

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while True:
            try:
                msg = await ws.receive(timeout=self._idle_timeout)
            except asyncio.TimeoutError:
                self._log.info("realtime session idle for %ss; closing", self._idle_timeout)
                await ws.close()
                self.on_close(ws.close_code, "idle timeout")
                return
            if msg.type == WSMsgType.TEXT:
                self.on_message(msg.data)
            elif msg.type == WSMsgType.ERROR:
                cause = ws.exception() or msg.data
                self.on_error(cause if isinstance(cause, BaseException) else TransportError(str(cause)))
            elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                self.on_close(ws.close_code, str(msg.extra or ""))
                return
            else:
                self._log.debug("ignoring websocket frame of type %s", msg.type)

    async def on_open(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self.closing = False
        self._log.info("connected to realtime hub")
        try:
            await asyncio.wait_for(ws.send_str(HANDSHAKE_FRAME), timeout=self._handshake_timeout)
        except (asyncio.TimeoutError, aiohttp.ClientError, ConnectionError) as e:
            await ws.close()
            self._ws = None
            raise TransportError(f"realtime handshake failed: {type(e).__name__}: {e}") from e
        self._log.debug("handshake sent")

    def on_message(self, data: str) -> None:
        if self.closing:
            self._log.debug("message ignored: session is closing")
            return
        for record in split_records(data):
            cleaned = clean_message(record)
            if not cleaned:
                continue
            try:
                self.listener.on_event(cleaned, self.device)
            except Exception:
                self._log.exception("event listener failed")

    def on_error(self, cause: BaseException) -> None:
        self._log.error("realtime websocket error: %s", cause)
        try:
            self.listener.on_error(cause, self.device)
        except Exception:
            self._log.exception("error listener failed")

    def on_close(self, code: Optional[int], reason: str) -> None:
        self.state = SessionState.CLOSED
        try:
            self.listener.connection_closed(self.device, code, reason)
        except Exception:
            self._log.exception("close listener failed")


__all__ = [
    "EventListener",
    "RealtimeWebSocketSession",
    "SessionState",
]
