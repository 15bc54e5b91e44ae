"""
Grünbeck cloud URL and environment configuration.

Loads .env and exposes base URLs, derived endpoint URLs and the fixed client
constants of the Grünbeck myProduct app. All URLs can be overridden via
environment variables for environment switching (e.g. a local test hub).

Environment variables:
  - GRUENBECK_USERNAME           (required for the bridge / CLI)
  - GRUENBECK_PASSWORD           (required for the bridge / CLI)
  - GRUENBECK_REFRESH_PERIOD     (optional, seconds, default: 60, minimum: 10)
  - GRUENBECK_INITIAL_DELAY      (optional, seconds, default: 20)
  - GRUENBECK_B2C_BASE_URL       (optional, default: https://gruenbeckb2c.b2clogin.com)
  - GRUENBECK_B2C_TENANT         (optional, default: /a50d35c1-202f-4da7-aa87-76e51a3098c6/b2c_1_signinup)
  - GRUENBECK_API_BASE_URL       (optional, default: https://prod-eu-gruenbeck-api.azurewebsites.net/api)
  - GRUENBECK_SIGNALR_BASE_URL   (optional, default: https://prod-eu-gruenbeck-signalr.service.signalr.net/client)
  - GRUENBECK_SIGNALR_HUB        (optional, default: gruenbeck)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

from dotenv import load_dotenv

from .errors import CliError


_DEFAULT_B2C_BASE = "https://gruenbeckb2c.b2clogin.com"
_DEFAULT_B2C_TENANT = "/a50d35c1-202f-4da7-aa87-76e51a3098c6/b2c_1_signinup"
_DEFAULT_API_BASE = "https://prod-eu-gruenbeck-api.azurewebsites.net/api"
_DEFAULT_SIGNALR_BASE = "https://prod-eu-gruenbeck-signalr.service.signalr.net/client"
_DEFAULT_SIGNALR_HUB = "gruenbeck"

_DEFAULT_REFRESH_PERIOD = 60
_MIN_REFRESH_PERIOD = 10
_DEFAULT_INITIAL_DELAY = 20

# Public client registration of the Grünbeck myProduct iOS app (MSAL).
CLIENT_ID = "5a83cc16-ffb1-42e9-9859-9fbf07f36df8"
REDIRECT_URI = f"msal{CLIENT_ID}://auth"
SCOPE = "https://gruenbeckb2c.onmicrosoft.com/iot/user_impersonation openid profile offline_access"

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 12_4_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/12.1.2 Mobile/15E148 Safari/604.1"
)
APP_USER_AGENT = "Gruenbeck/320 CFNetwork/978.0.7 Darwin/18.7.0"
HUB_USER_AGENT = "Gruenbeck/349 CFNetwork/1197 Darwin/20.0.0"


def _load_dotenv(log: Optional[logging.LoggerAdapter] = None) -> None:
    """
    Load a .env file into the process environment (if one exists).

    Search order:
    1. Current working directory (.env)
    2. The backend project root, three levels up from this file
       (backend/src/gruenbeck_cloud/config.py → backend/)

    Shell / CI environment variables already set take priority: load_dotenv()
    is always called with override=False.
    """
    cwd_env = Path.cwd() / ".env"
    package_root_env = Path(__file__).resolve().parents[2] / ".env"

    env_file: Optional[Path] = None
    if cwd_env.is_file():
        env_file = cwd_env
    elif package_root_env.is_file():
        env_file = package_root_env

    if env_file is None:
        return

    loaded = load_dotenv(env_file, override=False)
    if log is not None:
        if loaded:
            log.debug("loaded .env from %s (shell vars take precedence)", env_file)
        else:
            log.debug(
                ".env found at %s but all variables were already set in the environment",
                env_file,
            )


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    """Get environment variable, stripped; return default if unset or empty."""
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value or default


def _get_int_env(name: str, default: int) -> int:
    value = _get_env(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


# Load .env on module import so URL getters see env vars.
_load_dotenv()


def get_b2c_base_url() -> str:
    """Return the identity provider origin (e.g. https://gruenbeckb2c.b2clogin.com)."""
    return (_get_env("GRUENBECK_B2C_BASE_URL", _DEFAULT_B2C_BASE) or _DEFAULT_B2C_BASE).rstrip("/")


def get_b2c_tenant() -> str:
    """Return the tenant/policy path used for the initial authorize call."""
    tenant = _get_env("GRUENBECK_B2C_TENANT", _DEFAULT_B2C_TENANT) or _DEFAULT_B2C_TENANT
    return "/" + tenant.strip("/")


def get_api_base_url() -> str:
    """Return the application backend base URL (e.g. for /devices, /realtime/negotiate)."""
    return (_get_env("GRUENBECK_API_BASE_URL", _DEFAULT_API_BASE) or _DEFAULT_API_BASE).rstrip("/")


def get_signalr_base_url() -> str:
    """Return the realtime hub client base URL."""
    return (_get_env("GRUENBECK_SIGNALR_BASE_URL", _DEFAULT_SIGNALR_BASE) or _DEFAULT_SIGNALR_BASE).rstrip("/")


def get_signalr_hub() -> str:
    return _get_env("GRUENBECK_SIGNALR_HUB", _DEFAULT_SIGNALR_HUB) or _DEFAULT_SIGNALR_HUB


def get_authorize_url() -> str:
    """Return full OAuth authorize endpoint URL (query parameters are added by the caller)."""
    return f"{get_b2c_base_url()}{get_b2c_tenant()}/oauth2/v2.0/authorize"


def get_self_asserted_url(tenant: str) -> str:
    """Return the login form endpoint for the tenant path scraped from the authorize page."""
    return f"{get_b2c_base_url()}{tenant}/SelfAsserted"


def get_confirmed_url(tenant: str) -> str:
    return f"{get_b2c_base_url()}{tenant}/api/CombinedSigninAndSignup/confirmed"


def get_token_url(tenant: str) -> str:
    return f"{get_b2c_base_url()}{tenant}/oauth2/v2.0/token"


def get_devices_url() -> str:
    """Return device list endpoint URL."""
    return f"{get_api_base_url()}/devices"


def get_device_url_tmpl() -> str:
    """
    Return device detail URL template with placeholder:
    {serial}.
    """
    return f"{get_api_base_url()}/devices/{{serial}}"


def get_realtime_negotiate_url() -> str:
    """Return the backend endpoint that hands out hub-scoped access tokens."""
    return f"{get_api_base_url()}/realtime/negotiate"


def get_hub_negotiate_url() -> str:
    """Return the realtime hub negotiate endpoint (hub name included)."""
    return f"{get_signalr_base_url()}/negotiate?{urlencode({'hub': get_signalr_hub()})}"


def get_realtime_url_tmpl(action: str) -> str:
    """
    Return per-device realtime URL template with placeholders:
    {series}, {serial}. `action` is "enter" or "refresh".
    """
    return f"{get_api_base_url()}/devices/{{series}}/{{serial}}/realtime/{action}"


def get_hub_websocket_url(connection_id: str, access_token: str) -> str:
    """
    Return the websocket URL for a negotiated hub connection.

    The hub base URL is reused with its scheme switched to ws/wss.
    """
    base = get_signalr_base_url()
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    query = urlencode({"hub": get_signalr_hub(), "id": connection_id, "access_token": access_token})
    return f"{base}/?{query}"


@dataclass(frozen=True)
class BridgeConfig:
    username: str
    password: str
    refresh_period: int = _DEFAULT_REFRESH_PERIOD
    initial_delay: float = _DEFAULT_INITIAL_DELAY
    timeout_seconds: float = 30.0
    ssl_verify: bool = True


def load_bridge_config(
    *,
    timeout_seconds: float = 30.0,
    ssl_verify: bool = True,
    log: Optional[logging.LoggerAdapter] = None,
) -> BridgeConfig:
    """
    Build the bridge configuration from the environment.

    Raises CliError when the account credentials are missing.
    """
    _load_dotenv(log=log)
    username = _get_env("GRUENBECK_USERNAME")
    password = _get_env("GRUENBECK_PASSWORD")

    missing = [k for k, v in [("GRUENBECK_USERNAME", username), ("GRUENBECK_PASSWORD", password)] if not v]
    if missing:
        raise CliError(f"Missing required environment variables: {', '.join(missing)}")

    refresh_period = max(_MIN_REFRESH_PERIOD, _get_int_env("GRUENBECK_REFRESH_PERIOD", _DEFAULT_REFRESH_PERIOD))
    initial_delay = max(0, _get_int_env("GRUENBECK_INITIAL_DELAY", _DEFAULT_INITIAL_DELAY))

    if log is not None:
        log.debug(
            "bridge config: refresh_period=%ss initial_delay=%ss timeout_seconds=%s ssl_verify=%s",
            refresh_period,
            initial_delay,
            timeout_seconds,
            ssl_verify,
        )

    return BridgeConfig(
        username=username or "",
        password=password or "",
        refresh_period=refresh_period,
        initial_delay=float(initial_delay),
        timeout_seconds=float(timeout_seconds),
        ssl_verify=bool(ssl_verify),
    )
