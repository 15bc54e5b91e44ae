"""
Device directory of the Grünbeck application backend.

`api_request()` is the shared authenticated REST helper (also used by the
realtime negotiator). The directory functions on top of it never raise: the
listing is polled, so a failed call is logged and the next tick tries again.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

import requests

from .. import config as _config
from ..config import BridgeConfig
from ..errors import NotAuthenticated, TransportError
from ..logging_utils import _sanitize_text
from .models import Device

_API_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 12_4_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Mobile/15E148"
)


def _default_headers(access_token: str) -> dict[str, str]:
    return {
        "User-Agent": _API_USER_AGENT,
        "Accept": "application/json, text/plain, */*",
        "Accept-Language": "de-de",
        "Authorization": f"Bearer {access_token}",
        "cache-control": "no-cache",
    }


def api_request(
    *,
    session: requests.Session,
    method: str,
    url: str,
    access_token: str,
    cfg: BridgeConfig,
    log: logging.LoggerAdapter,
    headers: Optional[dict[str, str]] = None,
    expect_json: bool = True,
) -> Any:
    """
    Shared authenticated REST helper.

    - Adds Authorization: Bearer (raises NotAuthenticated if the token is empty)
    - Enforces timeout + TLS verification from `BridgeConfig`
    - POSTs are sent without a body (Content-Length: 0)
    - Parses JSON when `expect_json`; raises TransportError on failures
    """
    if not access_token:
        raise NotAuthenticated(f"{method} {url} attempted without an access token")

    merged = _default_headers(access_token)
    if headers:
        merged.update(headers)
    kwargs: dict[str, Any] = {}
    if method.upper() == "POST":
        kwargs["data"] = b""
        merged.setdefault("Content-Length", "0")

    start = time.perf_counter()
    try:
        resp = session.request(
            method,
            url,
            headers=merged,
            timeout=cfg.timeout_seconds,
            verify=cfg.ssl_verify,
            allow_redirects=False,
            **kwargs,
        )
    except requests.RequestException as e:
        raise TransportError(f"{method} {url} failed: {type(e).__name__}: {_sanitize_text(str(e))}") from e
    elapsed_ms = int((time.perf_counter() - start) * 1000)
    log.debug("%s %s -> HTTP %s (%sms)", method, url, resp.status_code, elapsed_ms)

    if resp.status_code >= 400:
        body = (resp.text or "")[:800]
        raise TransportError(
            f"{method} {url} failed: HTTP {resp.status_code}. Body (truncated, sanitized): {_sanitize_text(body)!r}",
            status_code=resp.status_code,
        )
    if not expect_json:
        return None
    try:
        return resp.json()
    except ValueError as e:
        body = (resp.text or "")[:800]
        raise TransportError(
            f"{method} {url} response was not valid JSON: {e}. Body: {_sanitize_text(body)!r}"
        ) from e


def _extract_list(payload: Any, *, url: str) -> list[dict]:
    """
    Normalize the device listing to a list[dict].

    The backend returns a bare list; a {"data": [...]} wrapper is accepted too.
    """
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        payload = payload["data"]
    if not isinstance(payload, list):
        raise TransportError(f"Unexpected JSON shape from {url}: expected a list of devices.")
    return [x for x in payload if isinstance(x, dict)]


def list_devices(
    *, session: requests.Session, cfg: BridgeConfig, access_token: str, log: logging.LoggerAdapter
) -> list[Device]:
    """
    Return the account's devices, or [] when unauthenticated or on any failure.
    """
    if not access_token:
        log.debug("list_devices skipped: no access token")
        return []
    url = _config.get_devices_url()
    log.info("listing devices")
    try:
        payload = api_request(
            session=session, method="GET", url=url, access_token=access_token, cfg=cfg, log=log
        )
        items = _extract_list(payload, url=url)
    except (TransportError, NotAuthenticated) as e:
        log.error("device listing failed: %s", e)
        return []
    devices = [Device.from_api(item) for item in items]
    log.info("devices listed (count=%s)", len(devices))
    return devices


def fetch_device_detail(
    *,
    session: requests.Session,
    cfg: BridgeConfig,
    access_token: str,
    device: Device,
    log: logging.LoggerAdapter,
) -> Optional[dict]:
    """
    Fetch `GET /devices/{serial}`. Informational: the result is only logged.

    Returns None when unauthenticated or on any failure.
    """
    if not access_token:
        return None
    url = _config.get_device_url_tmpl().format(serial=device.serial_number)
    try:
        payload = api_request(
            session=session, method="GET", url=url, access_token=access_token, cfg=cfg, log=log
        )
    except (TransportError, NotAuthenticated) as e:
        log.error("device detail for %s failed: %s", device.serial_number, e)
        return None
    if not isinstance(payload, dict):
        log.warning("device detail for %s was not a JSON object", device.serial_number)
        return None
    log.debug("device detail for %s: keys=%s", device.serial_number, sorted(payload.keys()))
    return payload


__all__ = ["api_request", "fetch_device_detail", "list_devices"]
