"""
Tests for event dispatch and the concurrent-safe listener registry.
"""

from __future__ import annotations

import threading

from gruenbeck_cloud.realtime.dispatcher import EventDispatcher

TELEMETRY_FRAME = '{"type":1,"target":"SendMessageToDevice","arguments":[{"mflow1":0,"mtemp":21.5}]}'


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingListener:
    def __init__(self, on_call=None) -> None:  # noqa: ANN001 - test helper
        self.events: list = []
        self._on_call = on_call

    def on_device_state_changed(self, device, event) -> None:  # noqa: ANN001 - listener protocol
        self.events.append((device, event))
        if self._on_call is not None:
            self._on_call()


def test_telemetry_reaches_every_listener_and_stamps_last_update(log, device) -> None:
    clock = FakeClock()
    dispatcher = EventDispatcher(log=log, clock=clock)
    first, second = RecordingListener(), RecordingListener()
    dispatcher.register_listener(first)
    dispatcher.register_listener(second)
    assert dispatcher.last_update == 1000.0

    clock.now = 1042.0
    event = dispatcher.on_event(TELEMETRY_FRAME, device)

    assert event is not None and event.values == {"mflow1": 0, "mtemp": 21.5}
    for listener in (first, second):
        assert len(listener.events) == 1
        got_device, got_event = listener.events[0]
        assert got_device == device
        assert got_event.values == {"mflow1": 0, "mtemp": 21.5}
    assert dispatcher.last_update == 1042.0


def test_non_telemetry_is_not_broadcast(log, device) -> None:
    clock = FakeClock()
    dispatcher = EventDispatcher(log=log, clock=clock)
    listener = RecordingListener()
    dispatcher.register_listener(listener)

    clock.now = 2000.0
    event = dispatcher.on_event('{"type":2,"invocationId":"1"}', device)

    assert event is not None and event.type == 2
    assert listener.events == []
    assert dispatcher.last_update == 1000.0


def test_undecodable_event_is_dropped(log, device) -> None:
    dispatcher = EventDispatcher(log=log)
    listener = RecordingListener()
    dispatcher.register_listener(listener)

    assert dispatcher.on_event('{"type":1,"arguments":"oops"}', device) is None
    assert listener.events == []


def test_registration_reports_whether_the_registry_changed(log) -> None:
    dispatcher = EventDispatcher(log=log)
    listener = RecordingListener()

    assert dispatcher.register_listener(listener) is True
    assert dispatcher.register_listener(listener) is False
    assert dispatcher.unregister_listener(listener) is True
    assert dispatcher.unregister_listener(listener) is False
    assert dispatcher.listeners == ()


def test_failing_listener_does_not_stop_the_broadcast(log, device) -> None:
    dispatcher = EventDispatcher(log=log)

    class Broken:
        def on_device_state_changed(self, device, event) -> None:  # noqa: ANN001
            raise RuntimeError("listener bug")

    healthy = RecordingListener()
    dispatcher.register_listener(Broken())
    dispatcher.register_listener(healthy)

    dispatcher.on_event(TELEMETRY_FRAME, device)

    assert len(healthy.events) == 1


def test_listener_removed_mid_broadcast_is_skipped(log, device) -> None:
    dispatcher = EventDispatcher(log=log)
    late = RecordingListener()
    early = RecordingListener(on_call=lambda: dispatcher.unregister_listener(late))
    dispatcher.register_listener(early)
    dispatcher.register_listener(late)

    dispatcher.on_event(TELEMETRY_FRAME, device)

    assert len(early.events) == 1
    assert late.events == []


def test_listener_added_mid_broadcast_does_not_raise(log, device) -> None:
    dispatcher = EventDispatcher(log=log)
    added = RecordingListener()
    adder = RecordingListener(on_call=lambda: dispatcher.register_listener(added))
    dispatcher.register_listener(adder)

    dispatcher.on_event(TELEMETRY_FRAME, device)
    dispatcher.on_event(TELEMETRY_FRAME, device)

    assert len(adder.events) == 2
    assert len(added.events) == 1


def test_concurrent_registration_during_dispatch(log, device) -> None:
    dispatcher = EventDispatcher(log=log)
    errors: list[BaseException] = []
    stop = threading.Event()

    def churn() -> None:
        try:
            while not stop.is_set():
                listener = RecordingListener()
                dispatcher.register_listener(listener)
                dispatcher.unregister_listener(listener)
        except BaseException as e:  # noqa: BLE001 - surfaced via assertion
            errors.append(e)

    def dispatch() -> None:
        try:
            for _ in range(500):
                dispatcher.on_event(TELEMETRY_FRAME, device)
        except BaseException as e:  # noqa: BLE001 - surfaced via assertion
            errors.append(e)

    churners = [threading.Thread(target=churn) for _ in range(4)]
    for t in churners:
        t.start()
    dispatcher_thread = threading.Thread(target=dispatch)
    dispatcher_thread.start()
    dispatcher_thread.join(timeout=30)
    stop.set()
    for t in churners:
        t.join(timeout=10)

    assert not dispatcher_thread.is_alive()
    assert errors == []
    assert dispatcher.listeners == ()


def test_is_stale_after_sixty_seconds_without_telemetry(log, device) -> None:
    clock = FakeClock()
    dispatcher = EventDispatcher(log=log, clock=clock)

    clock.now = 1060.0
    assert not dispatcher.is_stale()
    clock.now = 1060.5
    assert dispatcher.is_stale()

    dispatcher.on_event(TELEMETRY_FRAME, device)
    assert not dispatcher.is_stale()
