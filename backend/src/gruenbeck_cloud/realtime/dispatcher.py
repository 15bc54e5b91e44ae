from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, Protocol

from ..devices.models import Device
from ..errors import EventDecodeError
from ..logging_utils import get_logger
from .events import Event, parse_event

TELEMETRY_STALE_SECONDS = 60.0


class DeviceStatusListener(Protocol):
    def on_device_state_changed(self, device: Device, event: Event) -> None:
        ...


class EventDispatcher:
    """
    Decodes hub records and broadcasts telemetry to registered listeners.

    Called from the websocket I/O thread while application threads register
    and unregister listeners. The registry is a tuple swapped under `_lock`
    (copy-on-write), so a broadcast iterates a snapshot and never sees a
    concurrent modification. A listener removed before its turn in a running
    broadcast is skipped.
    """

    def __init__(
        self,
        *,
        log: Optional[logging.LoggerAdapter] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._log = log or get_logger("gruenbeck_cloud.realtime")
        self._clock = clock
        self._lock = threading.Lock()
        self._listeners: tuple[DeviceStatusListener, ...] = ()
        self._last_update = clock()

    def register_listener(self, listener: DeviceStatusListener) -> bool:
        with self._lock:
            if any(existing is listener for existing in self._listeners):
                return False
            self._listeners = self._listeners + (listener,)
            return True

    def unregister_listener(self, listener: DeviceStatusListener) -> bool:
        with self._lock:
            remaining = tuple(existing for existing in self._listeners if existing is not listener)
            if len(remaining) == len(self._listeners):
                return False
            self._listeners = remaining
            return True

    def _is_registered(self, listener: DeviceStatusListener) -> bool:
        with self._lock:
            return any(existing is listener for existing in self._listeners)

    @property
    def listeners(self) -> tuple[DeviceStatusListener, ...]:
        with self._lock:
            return self._listeners

    @property
    def last_update(self) -> float:
        with self._lock:
            return self._last_update

    def is_stale(self, max_age: float = TELEMETRY_STALE_SECONDS) -> bool:
        return self._clock() - self.last_update > max_age

    def on_event(self, message: str, device: Device) -> Optional[Event]:
        """
        Decode one record and broadcast it if it is telemetry.

        Returns the decoded event, or None when it was dropped.
        """
        try:
            event = parse_event(message)
        except EventDecodeError as e:
            self._log.warning("dropping undecodable event for %s: %s", device.serial_number, e)
            return None

        if not event.is_telemetry:
            self._log.debug("event type %s for %s carries no telemetry", event.type, device.serial_number)
            return event

        with self._lock:
            self._last_update = self._clock()
            snapshot = self._listeners

        for listener in snapshot:
            if not self._is_registered(listener):
                continue
            try:
                listener.on_device_state_changed(device, event)
            except Exception:
                self._log.exception("listener %r failed on event for %s", listener, device.serial_number)
        return event

    def on_error(self, cause: BaseException, device: Device) -> None:
        self._log.error("realtime session error for %s: %s", device.serial_number, cause)

    def connection_closed(self, device: Device, code: Optional[int], reason: str) -> None:
        if code in (None, 1000):
            self._log.info("realtime session for %s closed normally (code=%s)", device.serial_number, code)
        else:
            self._log.warning(
                "realtime session for %s closed abnormally (code=%s reason=%r)", device.serial_number, code, reason
            )


__all__ = ["DeviceStatusListener", "EventDispatcher", "TELEMETRY_STALE_SECONDS"]
