"""
Pytest configuration for the `gruenbeck-cloud` test suite.

We keep tests importing `gruenbeck_cloud...` normally (no importlib file loaders).
To make that work in a fresh checkout without requiring an editable install,
we add the local `backend/src` directory to `sys.path`.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    """
    Ensure the local `gruenbeck_cloud` package is importable for tests.
    """

    repo_root = Path(__file__).resolve().parent.parent
    backend_src = repo_root / "backend" / "src"

    if backend_src.is_dir():
        # Prepend so local sources win over any globally installed package.
        sys.path.insert(0, str(backend_src))


@pytest.fixture
def log() -> logging.LoggerAdapter:
    return logging.LoggerAdapter(logging.getLogger("gruenbeck_cloud.tests"), {})


@pytest.fixture
def cfg():
    from gruenbeck_cloud.config import BridgeConfig

    return BridgeConfig(
        username="user@example.com",
        password="pw-very-secret",
        refresh_period=60,
        initial_delay=0,
        timeout_seconds=5.0,
        ssl_verify=True,
    )


@pytest.fixture
def device():
    from gruenbeck_cloud.devices.models import Device

    return Device(
        id="softliQ.D/BS40000267",
        serial_number="BS40000267",
        series="softliQ.D",
        name="Softener",
        device_type=18,
        has_error=False,
    )
