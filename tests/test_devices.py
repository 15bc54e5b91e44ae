"""
Offline tests for the device model and directory client.
"""

from __future__ import annotations

import json
from unittest.mock import Mock

import pytest
import requests

from gruenbeck_cloud import config as config_mod
from gruenbeck_cloud.devices.directory import api_request, fetch_device_detail, list_devices
from gruenbeck_cloud.devices.models import Device
from gruenbeck_cloud.errors import NotAuthenticated, TransportError

DEVICE_LIST = [
    {
        "id": "softliQ.D/BS40000267",
        "serialNumber": "BS40000267",
        "series": "softliQ.D",
        "name": "Keller",
        "type": 18,
        "has_error": False,
        "register": True,
    },
    {
        "id": "softliQ.SC/BS50000001",
        "serialNumber": "BS50000001",
        "series": "softliQ.SC",
        "name": "Garage",
        "type": 17,
        "has_error": True,
    },
]


def _make_response(body, *, status_code: int = 200) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status_code
    resp.headers["Content-Type"] = "application/json"
    text = body if isinstance(body, str) else json.dumps(body)
    resp._content = text.encode("utf-8")  # noqa: SLF001 - test helper
    resp.encoding = "utf-8"
    return resp


def _session(response) -> Mock:
    session = Mock()
    if isinstance(response, Exception):
        session.request.side_effect = response
    else:
        session.request.return_value = response
    return session


def test_list_devices_decodes_every_entry(cfg, log) -> None:
    session = _session(_make_response(DEVICE_LIST))

    devices = list_devices(session=session, cfg=cfg, access_token="AT", log=log)

    assert devices == [
        Device(
            id="softliQ.D/BS40000267",
            serial_number="BS40000267",
            series="softliQ.D",
            name="Keller",
            device_type=18,
            has_error=False,
        ),
        Device(
            id="softliQ.SC/BS50000001",
            serial_number="BS50000001",
            series="softliQ.SC",
            name="Garage",
            device_type=17,
            has_error=True,
        ),
    ]
    method, url = session.request.call_args.args
    kwargs = session.request.call_args.kwargs
    assert (method, url) == ("GET", config_mod.get_devices_url())
    assert kwargs["headers"]["Authorization"] == "Bearer AT"
    assert kwargs["timeout"] == cfg.timeout_seconds


def test_list_devices_accepts_data_wrapper(cfg, log) -> None:
    session = _session(_make_response({"data": DEVICE_LIST}))

    assert len(list_devices(session=session, cfg=cfg, access_token="AT", log=log)) == 2


def test_list_devices_without_token_makes_no_call(cfg, log) -> None:
    session = _session(_make_response(DEVICE_LIST))

    assert list_devices(session=session, cfg=cfg, access_token="", log=log) == []
    session.request.assert_not_called()


@pytest.mark.parametrize(
    "response",
    [
        _make_response({"error": "unauthorized"}, status_code=401),
        _make_response("<html>not json</html>"),
        _make_response({"unexpected": "shape"}),
        requests.ConnectionError("connection refused"),
        requests.Timeout("read timed out"),
    ],
    ids=["http-401", "invalid-json", "wrong-shape", "connection-error", "timeout"],
)
def test_list_devices_failures_yield_empty_list(cfg, log, response) -> None:
    session = _session(response)

    assert list_devices(session=session, cfg=cfg, access_token="AT", log=log) == []


def test_fetch_device_detail_uses_serial_path(cfg, log, device) -> None:
    session = _session(_make_response({"serialNumber": device.serial_number, "mode": 1}))

    detail = fetch_device_detail(session=session, cfg=cfg, access_token="AT", device=device, log=log)

    assert detail == {"serialNumber": device.serial_number, "mode": 1}
    method, url = session.request.call_args.args
    assert method == "GET"
    assert url == f"{config_mod.get_devices_url()}/{device.serial_number}"


def test_fetch_device_detail_is_a_no_op_without_token(cfg, log, device) -> None:
    session = _session(_make_response({}))

    assert fetch_device_detail(session=session, cfg=cfg, access_token="", device=device, log=log) is None
    session.request.assert_not_called()


def test_fetch_device_detail_failure_returns_none(cfg, log, device) -> None:
    session = _session(_make_response({"error": "not found"}, status_code=404))

    assert fetch_device_detail(session=session, cfg=cfg, access_token="AT", device=device, log=log) is None


def test_api_request_refuses_empty_token(cfg, log) -> None:
    session = _session(_make_response({}))

    with pytest.raises(NotAuthenticated):
        api_request(session=session, method="GET", url="https://example.invalid", access_token="", cfg=cfg, log=log)
    session.request.assert_not_called()


def test_api_request_post_has_empty_body(cfg, log) -> None:
    session = _session(_make_response(""))

    result = api_request(
        session=session,
        method="POST",
        url="https://example.invalid/enter",
        access_token="AT",
        cfg=cfg,
        log=log,
        expect_json=False,
    )

    assert result is None
    kwargs = session.request.call_args.kwargs
    assert kwargs["data"] == b""
    assert kwargs["headers"]["Content-Length"] == "0"


def test_api_request_http_error_carries_status(cfg, log) -> None:
    session = _session(_make_response({"error": "boom"}, status_code=502))

    with pytest.raises(TransportError) as excinfo:
        api_request(session=session, method="GET", url="https://example.invalid", access_token="AT", cfg=cfg, log=log)
    assert excinfo.value.status_code == 502


def test_device_from_config_accepts_aliases() -> None:
    device = Device.from_config(
        {"id": "x/1", "serial": "BS1", "series": "softliQ.D", "name": "Bad", "type": "18", "error": "true"}
    )

    assert device.serial_number == "BS1"
    assert device.device_type == 18
    assert device.has_error is True
    assert device.key == ("softliQ.D", "BS1")
    assert device.label == "Bad (BS1)"


def test_device_to_dict_uses_api_keys(device) -> None:
    assert Device.from_api(device.to_dict()) == device
