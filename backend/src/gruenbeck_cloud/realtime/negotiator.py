"""
Realtime session negotiation and heartbeat, one call per refresh tick.

Negotiation takes two hops because the hub is a separate service:

  1. GET  <api>/realtime/negotiate                     (REST token) -> accessToken (hub token)
  2. POST <signalr>/negotiate?hub=gruenbeck            (hub token)  -> connectionId

After the socket is up the device's realtime topic is entered
(POST .../realtime/enter). Every tick then re-enters when telemetry has gone
stale and always sends the heartbeat (POST .../realtime/refresh).
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

import requests

from .. import config as _config
from ..config import BridgeConfig
from ..devices.directory import api_request
from ..devices.models import Device
from ..errors import NotAuthenticated, TransportError
from .dispatcher import EventDispatcher
from .websocket import RealtimeWebSocketSession

SessionFactory = Callable[..., RealtimeWebSocketSession]


class RealtimeNegotiator:
    """
    Keeps at most one realtime session per device.

    `tick()` for one device is never run concurrently (fixed-delay scheduling);
    `_lock` only guards the session table against `stop()` from another thread.
    """

    def __init__(
        self,
        *,
        session: requests.Session,
        cfg: BridgeConfig,
        dispatcher: EventDispatcher,
        log: logging.LoggerAdapter,
        session_factory: SessionFactory = RealtimeWebSocketSession,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http = session
        self._cfg = cfg
        self._dispatcher = dispatcher
        self._log = log
        self._session_factory = session_factory
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[tuple[str, str], RealtimeWebSocketSession] = {}

    def session_for(self, device: Device) -> Optional[RealtimeWebSocketSession]:
        with self._lock:
            return self._sessions.get(device.key)

    def is_running(self, device: Device) -> bool:
        ws = self.session_for(device)
        return ws is not None and ws.is_running()

    def _request_hub_token(self, access_token: str) -> str:
        payload = api_request(
            session=self._http,
            method="GET",
            url=_config.get_realtime_negotiate_url(),
            access_token=access_token,
            cfg=self._cfg,
            log=self._log,
            headers={"Content-Type": "text/plain;charset=UTF-8", "Origin": "file://", "Accept": "*/*"},
        )
        hub_token = payload.get("accessToken") if isinstance(payload, dict) else None
        if not hub_token:
            raise TransportError("realtime negotiate response missing accessToken")
        return str(hub_token)

    def _request_connection_id(self, hub_token: str) -> str:
        payload = api_request(
            session=self._http,
            method="POST",
            url=_config.get_hub_negotiate_url(),
            access_token=hub_token,
            cfg=self._cfg,
            log=self._log,
            headers={
                "User-Agent": _config.HUB_USER_AGENT,
                "Content-Type": "text/plain;charset=UTF-8",
                "Accept": "*/*",
                "X-Requested-With": "XMLHttpRequest",
            },
        )
        connection_id = payload.get("connectionId") if isinstance(payload, dict) else None
        if not connection_id:
            raise TransportError("hub negotiate response missing connectionId")
        return str(connection_id)

    def _post_realtime(self, action: str, access_token: str, device: Device) -> None:
        url = _config.get_realtime_url_tmpl(action).format(series=device.series, serial=device.serial_number)
        api_request(
            session=self._http,
            method="POST",
            url=url,
            access_token=access_token,
            cfg=self._cfg,
            log=self._log,
            headers={"Origin": "file://", "Accept": "*/*"},
            expect_json=False,
        )

    def enter_realtime(self, access_token: str, device: Device) -> None:
        self._log.info("entering realtime for %s", device.serial_number)
        self._post_realtime("enter", access_token, device)

    def refresh_realtime(self, access_token: str, device: Device) -> None:
        self._log.debug("realtime heartbeat for %s", device.serial_number)
        self._post_realtime("refresh", access_token, device)

    def _open_session(self, access_token: str, device: Device) -> None:
        hub_token = self._request_hub_token(access_token)
        connection_id = self._request_connection_id(hub_token)

        with self._lock:
            previous = self._sessions.pop(device.key, None)
        if previous is not None:
            previous.stop()

        ws = self._session_factory(
            connection_id,
            hub_token,
            device,
            self._dispatcher,
            log=self._log,
            connect_timeout=self._cfg.timeout_seconds,
            ssl_verify=self._cfg.ssl_verify,
        )
        ws.start()
        with self._lock:
            self._sessions[device.key] = ws
        self.enter_realtime(access_token, device)

    def tick(self, access_token: str, device: Device) -> bool:
        """
        Negotiate if needed, re-enter on stale telemetry, then heartbeat.

        Returns True when every call of this tick succeeded. Failures are
        logged; nothing is retried before the next tick.
        """
        if not access_token:
            self._log.debug("realtime tick for %s skipped: no access token", device.serial_number)
            return False

        ok = True
        if not self.is_running(device):
            try:
                self._open_session(access_token, device)
            except (TransportError, NotAuthenticated) as e:
                self._log.error("realtime negotiation for %s failed: %s", device.serial_number, e)
                ok = False
        else:
            self._log.debug("realtime session for %s already established", device.serial_number)

        if self._dispatcher.is_stale():
            self._log.info("no telemetry for at least 60s; entering realtime again for %s", device.serial_number)
            try:
                self.enter_realtime(access_token, device)
            except (TransportError, NotAuthenticated) as e:
                self._log.error("realtime enter for %s failed: %s", device.serial_number, e)
                ok = False

        try:
            self.refresh_realtime(access_token, device)
        except (TransportError, NotAuthenticated) as e:
            self._log.error("realtime heartbeat for %s failed: %s", device.serial_number, e)
            return False
        ws = self.session_for(device)
        if ws is not None:
            ws.last_heartbeat = self._clock()
        return ok

    def stop(self, device: Optional[Device] = None) -> None:
        """Stop the session of one device, or all sessions."""
        with self._lock:
            if device is None:
                stopping = list(self._sessions.values())
                self._sessions.clear()
            else:
                ws = self._sessions.pop(device.key, None)
                stopping = [ws] if ws is not None else []
        for ws in stopping:
            ws.stop()


__all__ = ["RealtimeNegotiator"]
