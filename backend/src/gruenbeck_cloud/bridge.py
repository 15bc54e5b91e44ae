"""
The cloud bridge: scheduling, status reporting and discovery.

One bridge holds the account session. It authenticates once shortly after
`start()` and runs one fixed-delay refresh task per device:

  no token?  -> run the authorization flow
  GET  /devices/{serial}                      (informational)
  realtime negotiate / re-enter / heartbeat

Every failure is caught at the task boundary, logged and reported as
`ConnectionStatus.COMMUNICATION_ERROR`; the next tick retries.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import requests

from .api_auth.auth import AuthorizationFlow, ConnectionStatus
from .config import BridgeConfig
from .devices.directory import fetch_device_detail, list_devices
from .devices.models import Device
from .errors import AuthFailed, GruenbeckCloudError
from .realtime.dispatcher import DeviceStatusListener, EventDispatcher
from .realtime.negotiator import RealtimeNegotiator


class PeriodicTask(threading.Thread):
    """
    Run `fn` after `initial_delay`, then every `interval` seconds after the
    previous run finished (fixed delay). With `interval=None` it runs once.
    """

    def __init__(
        self,
        fn: Callable[[], Any],
        *,
        name: str,
        log: logging.LoggerAdapter,
        initial_delay: float = 0.0,
        interval: Optional[float] = None,
    ) -> None:
        super().__init__(name=name, daemon=True)
        self._fn = fn
        self._log = log
        self._initial_delay = initial_delay
        self._interval = interval
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(self) -> None:
        if self._cancelled.wait(self._initial_delay):
            return
        while True:
            try:
                self._fn()
            except Exception:
                self._log.exception("scheduled task %s failed", self.name)
            if self._interval is None or self._cancelled.wait(self._interval):
                return


@dataclass(frozen=True)
class DiscoveryResult:
    device: Device
    label: str
    properties: dict[str, Any] = field(default_factory=dict)
    representation_property: str = "serial"

    @classmethod
    def for_device(cls, device: Device) -> "DiscoveryResult":
        return cls(
            device=device,
            label=device.label,
            properties={
                "serial": device.serial_number,
                "series": device.series,
                "id": device.id,
                "name": device.name,
            },
        )


StatusCallback = Callable[[ConnectionStatus], None]


class GruenbeckCloudBridge:
    def __init__(
        self,
        cfg: BridgeConfig,
        *,
        log: logging.LoggerAdapter,
        status_callback: Optional[StatusCallback] = None,
        session: Optional[requests.Session] = None,
        flow: Optional[AuthorizationFlow] = None,
        dispatcher: Optional[EventDispatcher] = None,
        negotiator: Optional[RealtimeNegotiator] = None,
    ) -> None:
        self.cfg = cfg
        self._log = log
        self._status_callback = status_callback
        self._http = session or requests.Session()
        self.flow = flow or AuthorizationFlow(
            session=self._http, cfg=cfg, log=log, status_callback=self._report_status
        )
        self.dispatcher = dispatcher or EventDispatcher(log=log)
        self.negotiator = negotiator or RealtimeNegotiator(
            session=self._http, cfg=cfg, dispatcher=self.dispatcher, log=log
        )
        self.status: Optional[ConnectionStatus] = None
        self._lock = threading.Lock()
        self._tasks: dict[str, PeriodicTask] = {}
        self._devices: dict[tuple[str, str], Device] = {}

    def _report_status(self, status: ConnectionStatus) -> None:
        if status != self.status:
            self._log.info("bridge status: %s", status.value)
        self.status = status
        if self._status_callback is not None:
            try:
                self._status_callback(status)
            except Exception:
                self._log.exception("status callback raised")

    def _schedule(self, key: str, task: PeriodicTask) -> None:
        with self._lock:
            previous = self._tasks.pop(key, None)
            self._tasks[key] = task
        if previous is not None:
            previous.cancel()
        task.start()

    # --- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Schedule the initial authentication after `initial_delay`."""
        self._log.info("starting bridge (initial_delay=%ss)", self.cfg.initial_delay)
        self._schedule(
            "initialize",
            PeriodicTask(
                self.authenticate,
                name="gruenbeck-initialize",
                log=self._log,
                initial_delay=self.cfg.initial_delay,
            ),
        )

    def stop(self) -> None:
        """Cancel every scheduled task and stop all realtime sessions."""
        self._log.info("stopping bridge")
        with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
        for task in tasks:
            task.cancel()
        self.negotiator.stop()

    def authenticate(self) -> bool:
        try:
            self.flow.authenticate()
        except AuthFailed:
            return False
        return True

    # --- devices -------------------------------------------------------------

    def add_device(self, device: Device) -> None:
        """Schedule the per-device refresh task (first run immediately)."""
        with self._lock:
            self._devices[device.key] = device
        self._log.info("adding device %s (refresh every %ss)", device.serial_number, self.cfg.refresh_period)
        self._schedule(
            f"refresh:{device.series}/{device.serial_number}",
            PeriodicTask(
                lambda: self.refresh_device(device),
                name=f"gruenbeck-refresh-{device.serial_number}",
                log=self._log,
                interval=float(self.cfg.refresh_period),
            ),
        )

    def remove_device(self, device: Device) -> None:
        with self._lock:
            self._devices.pop(device.key, None)
            task = self._tasks.pop(f"refresh:{device.series}/{device.serial_number}", None)
        if task is not None:
            task.cancel()
        self.negotiator.stop(device)

    def refresh_device(self, device: Device) -> bool:
        """One refresh tick for `device`. Returns True when the tick fully succeeded."""
        if not self.flow.has_token() and not self.authenticate():
            return False
        access_token = self.flow.access_token
        try:
            fetch_device_detail(
                session=self._http, cfg=self.cfg, access_token=access_token, device=device, log=self._log
            )
            ok = self.negotiator.tick(access_token, device)
        except GruenbeckCloudError as e:
            self._log.error("refresh of %s failed: %s", device.serial_number, e)
            ok = False
        if not ok:
            # Any failed dependent call forces a full re-authentication next tick.
            self.flow.invalidate()
            self._report_status(ConnectionStatus.COMMUNICATION_ERROR)
        return ok

    def list_devices(self) -> list[Device]:
        if not self.flow.has_token():
            self.authenticate()
        return list_devices(session=self._http, cfg=self.cfg, access_token=self.flow.access_token, log=self._log)

    def discover_devices(self) -> list[DiscoveryResult]:
        results = [DiscoveryResult.for_device(device) for device in self.list_devices()]
        self._log.info("discovered %s device(s)", len(results))
        return results

    # --- listeners -----------------------------------------------------------

    def register_device_status_listener(self, listener: DeviceStatusListener) -> bool:
        return self.dispatcher.register_listener(listener)

    def unregister_device_status_listener(self, listener: DeviceStatusListener) -> bool:
        return self.dispatcher.unregister_listener(listener)


__all__ = [
    "ConnectionStatus",
    "DiscoveryResult",
    "GruenbeckCloudBridge",
    "PeriodicTask",
]
