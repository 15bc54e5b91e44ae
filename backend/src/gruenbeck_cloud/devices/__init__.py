"""
Device model and directory client for the Grünbeck application backend.
"""
from .directory import fetch_device_detail, list_devices
from .models import Device

__all__: list[str] = [
    "Device",
    "fetch_device_detail",
    "list_devices",
]
