from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Device:
    """
    A softener known to the cloud account.

    Identity is the (series, serial) pair; every per-device REST path is built from it.
    """

    id: str
    serial_number: str
    series: str = ""
    name: str = ""
    device_type: Optional[int] = None
    has_error: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.series, self.serial_number)

    @property
    def label(self) -> str:
        return f"{self.name} ({self.serial_number})"

    @classmethod
    def from_api(cls, item: Mapping[str, Any]) -> "Device":
        """Build from one entry of the `GET /devices` listing."""
        return cls(
            id=_as_str(item.get("id")),
            serial_number=_as_str(item.get("serialNumber")),
            series=_as_str(item.get("series")),
            name=_as_str(item.get("name")),
            device_type=_as_int(item.get("type")),
            has_error=_as_bool(item.get("has_error", False)),
        )

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "Device":
        """
        Build from a device configuration mapping.

        Accepts `serial` or `serialNumber`, and `error` or `has_error`.
        """
        serial = cfg.get("serialNumber", cfg.get("serial"))
        error = cfg.get("has_error", cfg.get("error", False))
        return cls(
            id=_as_str(cfg.get("id")),
            serial_number=_as_str(serial),
            series=_as_str(cfg.get("series")),
            name=_as_str(cfg.get("name")),
            device_type=_as_int(cfg.get("type")),
            has_error=_as_bool(error),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "serialNumber": self.serial_number,
            "series": self.series,
            "name": self.name,
            "type": self.device_type,
            "has_error": self.has_error,
        }
