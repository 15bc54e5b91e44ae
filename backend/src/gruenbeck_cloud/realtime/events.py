"""
Realtime hub frames: cleaning, record splitting and event decoding.

The hub speaks the JSON hub protocol: every record is one JSON envelope
terminated by the record separator (0x1E), e.g.

    {"type":1,"target":"SendMessageToDevice","arguments":[{"mflow1":0,"mtemp":21.5}]}\x1e

Only `type == 1` (invocation) carries telemetry; pings (6), completions and
close messages are decoded but have no payload.
"""

from __future__ import annotations

import json
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from ..errors import EventDecodeError

RECORD_SEPARATOR = "\x1e"
HANDSHAKE_FRAME = '{"protocol":"json","version":1}' + RECORD_SEPARATOR

TYPE_INVOCATION = 1

Scalar = Union[str, int, float, bool]

_REMOVED_CATEGORIES = {"Cc", "Cf", "Co", "Cn"}
# Whitespace kept by the cleaner; the record separator is not part of it.
_KEPT_WHITESPACE = {" ", "\t", "\n", "\x0b", "\x0c"}


def clean_message(text: str) -> str:
    """
    Normalize carriage returns to newlines and drop control, format,
    private-use and unassigned characters (whitespace is kept).
    """
    text = text.strip().replace("\r\n", "\n").replace("\r", "\n")
    return "".join(
        ch for ch in text if ch in _KEPT_WHITESPACE or unicodedata.category(ch) not in _REMOVED_CATEGORIES
    )


def split_records(frame: str) -> list[str]:
    """Split one text frame into its non-empty hub records."""
    return [part for part in frame.split(RECORD_SEPARATOR) if part.strip()]


@dataclass(frozen=True)
class Event:
    message: str
    type: Optional[int] = None
    values: dict[str, Scalar] = field(default_factory=dict)

    @property
    def is_telemetry(self) -> bool:
        return self.type == TYPE_INVOCATION


def _flat_payload(arg: Any) -> dict[str, Scalar]:
    if not isinstance(arg, dict):
        raise EventDecodeError("telemetry argument is not a JSON object")
    values: dict[str, Scalar] = {}
    for key, value in arg.items():
        if not isinstance(value, (str, int, float, bool)):
            raise EventDecodeError(f"telemetry value for {key!r} is not a scalar")
        values[str(key)] = value
    return values


def parse_event(message: str) -> Event:
    """
    Decode one cleaned hub record.

    Raises:
        EventDecodeError: not a JSON object, non-integer `type`, or a type 1
            record without a flat first argument.
    """
    try:
        payload = json.loads(message)
    except ValueError as e:
        raise EventDecodeError(f"frame is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise EventDecodeError(f"frame is not a JSON object (type={type(payload).__name__})")

    if "type" not in payload:
        return Event(message=message)
    event_type = payload["type"]
    if isinstance(event_type, bool) or not isinstance(event_type, int):
        raise EventDecodeError(f"frame type is not an integer: {event_type!r}")
    if event_type != TYPE_INVOCATION:
        return Event(message=message, type=event_type)

    arguments = payload.get("arguments")
    if not isinstance(arguments, list) or not arguments:
        raise EventDecodeError("invocation frame has no arguments")
    return Event(message=message, type=event_type, values=_flat_payload(arguments[0]))


__all__ = [
    "Event",
    "HANDSHAKE_FRAME",
    "RECORD_SEPARATOR",
    "clean_message",
    "parse_event",
    "split_records",
]
