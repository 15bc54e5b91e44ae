#!/usr/bin/env python3
"""
Grünbeck cloud CLI.

Subcommands:
  login     run the authorization flow and report success
  devices   list the account's devices as JSON
  watch     stream realtime telemetry as JSON lines until Ctrl+C

Credentials come from GRUENBECK_USERNAME / GRUENBECK_PASSWORD (environment or
.env); see `gruenbeck_cloud.config` for the remaining variables.

Exit codes: 0 ok, 2 CLI/auth error, 3 SSL error, 4 timeout, 130 interrupted.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
import uuid
from typing import Optional

import requests

from .api_auth.auth import AuthorizationFlow
from .bridge import GruenbeckCloudBridge
from .config import load_bridge_config
from .devices.models import Device
from .errors import AuthFailed, CliError
from .logging_utils import _sanitize_text, configure_logging
from .realtime.events import Event


class _JsonLinePrinter:
    """Device status listener printing one JSON line per telemetry event."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def on_device_state_changed(self, device: Device, event: Event) -> None:
        line = json.dumps({"serial": device.serial_number, "values": event.values}, ensure_ascii=False)
        with self._lock:
            print(line, flush=True)


def _dump(obj: object, *, pretty: bool) -> str:
    if pretty:
        return json.dumps(obj, indent=2, ensure_ascii=False, sort_keys=True)
    return json.dumps(obj, ensure_ascii=False)


def _cmd_login(args: argparse.Namespace, bridge: GruenbeckCloudBridge) -> int:
    bridge.flow.authenticate()
    print(_dump({"authenticated": True}, pretty=args.pretty))
    return 0


def _cmd_devices(args: argparse.Namespace, bridge: GruenbeckCloudBridge) -> int:
    bridge.flow.authenticate()
    devices = bridge.list_devices()
    print(_dump([d.to_dict() for d in devices], pretty=args.pretty))
    return 0


def _cmd_watch(args: argparse.Namespace, bridge: GruenbeckCloudBridge, log: logging.LoggerAdapter) -> int:
    bridge.flow.authenticate()
    devices = bridge.list_devices()
    if args.serial:
        wanted = set(args.serial)
        devices = [d for d in devices if d.serial_number in wanted]
    if not devices:
        raise CliError("No matching devices found.")

    bridge.register_device_status_listener(_JsonLinePrinter())
    for device in devices:
        bridge.add_device(device)
    log.info("watching %s device(s); press Ctrl+C to stop", len(devices))
    try:
        threading.Event().wait()
    finally:
        bridge.stop()
    return 0


def parse_args(argv: list[str]) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")
    common.add_argument("--timeout-seconds", default="30", help="HTTP timeout in seconds (default: 30).")
    common.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help='Logging verbosity (default: GRUENBECK_LOG_LEVEL or "INFO").',
    )
    common.add_argument(
        "--insecure-skip-ssl-verify",
        action="store_true",
        help="Disable TLS certificate verification (NOT recommended).",
    )

    p = argparse.ArgumentParser(
        prog="gruenbeck-cloud",
        description="Grünbeck cloud CLI (login -> devices -> realtime telemetry).",
    )
    sub = p.add_subparsers(dest="command", required=True)
    sub.add_parser("login", parents=[common], help="Run the authorization flow.")
    sub.add_parser("devices", parents=[common], help="List devices as JSON.")
    watch = sub.add_parser("watch", parents=[common], help="Stream realtime telemetry as JSON lines.")
    watch.add_argument(
        "--serial",
        action="append",
        default=None,
        help="Only watch this serial number (repeatable; default: all devices).",
    )
    return p.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    log: Optional[logging.LoggerAdapter] = None
    try:
        run_id = uuid.uuid4().hex[:12]
        log_level = args.log_level or os.getenv("GRUENBECK_LOG_LEVEL") or "INFO"
        log = configure_logging(run_id=run_id, level=log_level)
        log.info("starting %s", args.command)

        try:
            timeout_seconds = float(args.timeout_seconds)
        except ValueError as e:
            raise CliError(f"--timeout-seconds must be a number, got {args.timeout_seconds!r}") from e

        cfg = load_bridge_config(
            timeout_seconds=timeout_seconds,
            ssl_verify=not bool(args.insecure_skip_ssl_verify),
            log=log,
        )
        session = requests.Session()
        bridge = GruenbeckCloudBridge(
            cfg,
            log=log,
            session=session,
            flow=AuthorizationFlow(session=session, cfg=cfg, log=log),
        )

        if args.command == "login":
            rc = _cmd_login(args, bridge)
        elif args.command == "devices":
            rc = _cmd_devices(args, bridge)
        else:
            rc = _cmd_watch(args, bridge, log)
        log.info("completed successfully")
        return rc
    except (CliError, AuthFailed) as e:
        # SSL and timeout failures surface as the cause of an AuthFailed.
        cause = getattr(e, "cause", None)
        root = cause.__cause__ if cause is not None else None
        if isinstance(root, requests.exceptions.SSLError):
            return _ssl_error(root, log)
        if isinstance(root, requests.exceptions.Timeout):
            return _timeout_error(log)
        # Avoid accidentally printing secrets in error output.
        _logger(log).error("CLI error: %s", _sanitize_text(str(e)))
        print(f"Error: {_sanitize_text(str(e))}", file=sys.stderr)
        return 2
    except requests.exceptions.SSLError as e:
        return _ssl_error(e, log)
    except requests.exceptions.Timeout:
        return _timeout_error(log)
    except KeyboardInterrupt:
        _logger(log).warning("interrupted by user")
        print("Interrupted.", file=sys.stderr)
        return 130


def _logger(log: Optional[logging.LoggerAdapter]) -> logging.LoggerAdapter:
    return log if log is not None else logging.LoggerAdapter(logging.getLogger("gruenbeck_cloud"), {})


def _ssl_error(e: BaseException, log: Optional[logging.LoggerAdapter]) -> int:
    _logger(log).error("SSL error: %s", _sanitize_text(str(e)))
    print(
        "Error: SSL verification failed. "
        "If you must (not recommended), retry with --insecure-skip-ssl-verify. "
        f"Details: {_sanitize_text(str(e))}",
        file=sys.stderr,
    )
    return 3


def _timeout_error(log: Optional[logging.LoggerAdapter]) -> int:
    _logger(log).error("request timed out")
    print("Error: request timed out. Try increasing --timeout-seconds.", file=sys.stderr)
    return 4


if __name__ == "__main__":
    raise SystemExit(main())
