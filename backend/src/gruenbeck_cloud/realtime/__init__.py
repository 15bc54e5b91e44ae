"""
Realtime telemetry: hub negotiation, the WebSocket session, event decoding
and dispatch.

Note: submodules import aiohttp; import them directly, e.g.
  from gruenbeck_cloud.realtime.negotiator import RealtimeNegotiator
"""
from .dispatcher import DeviceStatusListener, EventDispatcher
from .events import Event, parse_event

__all__: list[str] = [
    "DeviceStatusListener",
    "Event",
    "EventDispatcher",
    "parse_event",
]
