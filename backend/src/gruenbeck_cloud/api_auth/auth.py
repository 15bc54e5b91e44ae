"""
Grünbeck B2C authorization flow (PKCE, scraped).

The identity provider offers no machine API for the password login of the
myProduct app, so the flow replays what the app's embedded browser does:

  INIT             GET  <tenant>/oauth2/v2.0/authorize        -> csrf, transId, policy, tenant
  AUTHORIZED       POST <tenant>/SelfAsserted                 -> 200 (credentials accepted)
  LOGIN_SUBMITTED  GET  <tenant>/api/CombinedSigninAndSignup/confirmed (no redirects) -> code
  CODE_OBTAINED    POST <tenant>/oauth2/v2.0/token            -> access_token, refresh_token
  AUTHENTICATED

Every step is one blocking `requests` call on a shared `requests.Session`
(the authorize page sets cookies later steps depend on). Any failure voids the
whole run with `AuthFailed(step, cause)`; retrying is the caller's job.

There is no refresh-token grant: re-authentication always re-runs the flow.
"""

from __future__ import annotations

import enum
import json
import logging
import threading
import time
from typing import Any, Callable, Optional

import requests

from .. import config as _config
from ..config import BridgeConfig
from ..errors import AuthFailed, ExtractionError, TransportError
from ..logging_utils import _redact, _sanitize_mapping, _sanitize_obj, _sanitize_text
from .pkce import generate_code_challenge
from .scrape import extract_auth_fields, extract_authorization_code
from .session import AuthSession


class ConnectionStatus(str, enum.Enum):
    """Connectivity reported to the status callback."""

    ONLINE = "online"
    COMMUNICATION_ERROR = "offline/communication-error"


class AuthState(str, enum.Enum):
    INIT = "INIT"
    AUTHORIZED = "AUTHORIZED"
    LOGIN_SUBMITTED = "LOGIN_SUBMITTED"
    CODE_OBTAINED = "CODE_OBTAINED"
    AUTHENTICATED = "AUTHENTICATED"


# MSAL.iOS query parameters sent alongside the PKCE challenge.
_AUTHORIZE_PARAMS = {
    "state": "NzZDNkNBRkMtOUYwOC00RTZBLUE5MkYtQTNFRDVGNTQ3MUNG",
    "x-client-Ver": "0.2.2",
    "prompt": "select_account",
    "response_type": "code",
    "x-client-OS": "12.4.1",
    "x-client-SKU": "MSAL.iOS",
    "x-client-CPU": "64",
    "client-request-id": "FDCD0F73-B7CD-4219-A29B-EE51A60FEE3E",
    "haschrome": "1",
    "return-client-request-id": "true",
    "x-client-DM": "iPhone",
}

_TOKEN_HEADERS = {
    "x-client-SKU": "MSAL.iOS",
    "Accept": "application/json",
    "x-client-OS": "12.4.1",
    "x-app-name": "Grünbeck myProduct",
    "x-client-CPU": "64",
    "x-app-ver": "1.0.4",
    "Accept-Language": "de-de",
    "client-request-id": "4719C1AF-93BC-4F7B-8B17-9F298FF2E9AB",
    "x-client-Ver": "0.2.2",
    "x-client-DM": "iPhone",
    "return-client-request-id": "true",
    "cache-control": "no-cache",
    "Content-Type": "application/x-www-form-urlencoded",
}


def _authorize_params(code_challenge: str) -> dict[str, str]:
    params = dict(_AUTHORIZE_PARAMS)
    params.update(
        {
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "scope": _config.SCOPE,
            "redirect_uri": _config.REDIRECT_URI,
            "client_id": _config.CLIENT_ID,
        }
    )
    return params


def _send(
    *,
    session: requests.Session,
    method: str,
    url: str,
    cfg: BridgeConfig,
    log: logging.LoggerAdapter,
    step: AuthState,
    **kwargs: Any,
) -> requests.Response:
    """
    One HTTP call of the flow; network and HTTP status failures become TransportError.
    """
    start = time.perf_counter()
    try:
        resp = session.request(
            method,
            url,
            timeout=cfg.timeout_seconds,
            verify=cfg.ssl_verify,
            **kwargs,
        )
    except requests.RequestException as e:
        raise TransportError(f"{step.value}: {type(e).__name__}: {_sanitize_text(str(e))}") from e
    elapsed_ms = int((time.perf_counter() - start) * 1000)
    log.debug(
        "%s response details: %s",
        step.value,
        {
            "status_code": resp.status_code,
            "elapsed_ms": elapsed_ms,
            "content_type": resp.headers.get("Content-Type") or resp.headers.get("content-type"),
        },
    )
    if resp.status_code >= 400:
        raise TransportError(
            f"{step.value} failed: HTTP {resp.status_code}. "
            f"Body (truncated, sanitized): {_sanitize_text((resp.text or '')[:500])!r}",
            status_code=resp.status_code,
        )
    return resp


def request_authorize_page(
    *, session: requests.Session, cfg: BridgeConfig, auth: AuthSession, log: logging.LoggerAdapter
) -> AuthSession:
    """
    INIT -> AUTHORIZED: load the authorize page and scrape csrf/transId/policy/tenant.
    """
    params = _authorize_params(auth.code_challenge)
    log.info("requesting authorize page")
    log.debug(
        "authorize request details (sanitized): %s",
        {"url": _config.get_authorize_url(), "params": _sanitize_mapping(params)},
    )
    resp = _send(
        session=session,
        method="GET",
        url=_config.get_authorize_url(),
        cfg=cfg,
        log=log,
        step=AuthState.INIT,
        params=params,
        headers={"User-Agent": _config.BROWSER_USER_AGENT},
    )
    fields = extract_auth_fields(resp.text or "")
    log.debug(
        "authorize page scraped: csrf=%s trans_id=%s policy=%s tenant=%s",
        "<redacted>",
        _redact(fields.trans_id),
        fields.policy,
        fields.tenant,
    )
    return auth.with_auth_fields(fields)


def submit_login(
    *, session: requests.Session, cfg: BridgeConfig, auth: AuthSession, log: logging.LoggerAdapter
) -> AuthSession:
    """
    AUTHORIZED -> LOGIN_SUBMITTED: post the credentials to the SelfAsserted endpoint.

    A rejected password still comes back as HTTP 200, with a JSON body whose
    `status` is not "200"; that is treated as a failure too.
    """
    base = _config.get_b2c_base_url()
    headers = {
        "User-Agent": _config.BROWSER_USER_AGENT,
        "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
        "X-CSRF-TOKEN": auth.csrf,
        "Accept": "application/json, text/javascript, */*; q=0.01",
        "X-Requested-With": "XMLHttpRequest",
        "Origin": base,
        "Referer": _config.get_authorize_url(),
    }
    form = {"request_type": "RESPONSE", "logonIdentifier": cfg.username, "password": cfg.password}

    log.info("submitting login form")
    log.debug(
        "login request details (sanitized): %s",
        {"headers": _sanitize_mapping(headers), "form": _sanitize_mapping(form)},
    )
    resp = _send(
        session=session,
        method="POST",
        url=_config.get_self_asserted_url(auth.tenant),
        cfg=cfg,
        log=log,
        step=AuthState.AUTHORIZED,
        params={"tx": auth.trans_id, "p": auth.policy},
        data=form,
        headers=headers,
    )
    if resp.status_code != 200:
        raise TransportError(f"login returned HTTP {resp.status_code}, expected 200", status_code=resp.status_code)

    try:
        payload = json.loads(resp.text) if resp.text else None
    except ValueError:
        payload = None
    if isinstance(payload, dict) and "status" in payload and str(payload.get("status")) != "200":
        raise TransportError(
            f"login rejected by identity provider: status={payload.get('status')!r} "
            f"message={_sanitize_text(str(payload.get('message') or ''))!r}"
        )
    return auth


def confirm_signin(
    *, session: requests.Session, cfg: BridgeConfig, auth: AuthSession, log: logging.LoggerAdapter
) -> str:
    """
    LOGIN_SUBMITTED -> CODE_OBTAINED: fetch the confirm page and scrape the authorization code.

    Redirects are disabled: the redirect target is the app's custom URL scheme.
    """
    log.info("confirming sign-in")
    resp = _send(
        session=session,
        method="GET",
        url=_config.get_confirmed_url(auth.tenant),
        cfg=cfg,
        log=log,
        step=AuthState.LOGIN_SUBMITTED,
        params={"csrf_token": auth.csrf, "tx": auth.trans_id, "p": auth.policy},
        headers={
            "User-Agent": _config.BROWSER_USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        },
        cookies={"x-ms-cpim-csrf": auth.csrf},
        allow_redirects=False,
    )
    code = extract_authorization_code(resp.text or "")
    log.debug("authorization code extracted (length=%s)", len(code))
    return code


def exchange_code_for_token(
    *,
    session: requests.Session,
    cfg: BridgeConfig,
    auth: AuthSession,
    code: str,
    log: logging.LoggerAdapter,
    now: Optional[float] = None,
) -> AuthSession:
    """
    CODE_OBTAINED -> AUTHENTICATED: redeem the code (with the PKCE verifier) for tokens.
    """
    form = {
        "client_info": "1",
        "scope": _config.SCOPE,
        "code": code,
        "grant_type": "authorization_code",
        "code_verifier": auth.code_verifier,
        "redirect_uri": _config.REDIRECT_URI,
        "client_id": _config.CLIENT_ID,
    }
    headers = dict(_TOKEN_HEADERS)
    headers["User-Agent"] = _config.APP_USER_AGENT

    log.info("exchanging authorization code for tokens")
    log.debug("token request form (sanitized): %s", _sanitize_mapping(form))
    resp = _send(
        session=session,
        method="POST",
        url=_config.get_token_url(auth.tenant),
        cfg=cfg,
        log=log,
        step=AuthState.CODE_OBTAINED,
        data=form,
        headers=headers,
        allow_redirects=False,
    )
    try:
        payload = resp.json()
    except ValueError as e:
        raise TransportError(
            f"token response was not valid JSON: {e}. Body: {_sanitize_text((resp.text or '')[:500])!r}"
        ) from e
    if not isinstance(payload, dict):
        raise TransportError(f"token response was not a JSON object (type={type(payload).__name__})")

    log.debug("token response body (sanitized): %s", _sanitize_obj(payload))
    access_token = payload.get("access_token")
    if not access_token:
        raise TransportError(f"token response missing access_token. Keys: {sorted(payload.keys())}")

    log.info("access token acquired")
    return auth.with_tokens(
        access_token=str(access_token),
        refresh_token=str(payload.get("refresh_token") or ""),
        now=time.time() if now is None else now,
    )


StatusCallback = Callable[..., None]


class AuthorizationFlow:
    """
    Owns the `AuthSession` and runs the flow on demand.

    The session is only ever swapped as a whole, under `_lock`: a complete
    session after success, an empty one after failure.
    """

    def __init__(
        self,
        *,
        session: requests.Session,
        cfg: BridgeConfig,
        log: logging.LoggerAdapter,
        status_callback: Optional[StatusCallback] = None,
        challenge_factory: Callable[[], Any] = generate_code_challenge,
    ) -> None:
        self._session = session
        self._cfg = cfg
        self._log = log
        self._status_callback = status_callback
        self._challenge_factory = challenge_factory
        self._lock = threading.Lock()
        self._auth = AuthSession()
        self.state = AuthState.INIT

    @property
    def auth_session(self) -> AuthSession:
        with self._lock:
            return self._auth

    @property
    def access_token(self) -> str:
        with self._lock:
            return self._auth.access_token

    def has_token(self) -> bool:
        return bool(self.access_token)

    def invalidate(self) -> None:
        """Drop the current session; the next tick re-runs the flow."""
        with self._lock:
            self._auth = AuthSession()
            self.state = AuthState.INIT

    def _report(self, status: Any) -> None:
        if self._status_callback is None:
            return
        try:
            self._status_callback(status)
        except Exception:
            self._log.exception("status callback raised")

    def authenticate(self) -> AuthSession:
        """
        Run the full flow once.

        Raises:
            AuthFailed: any step failed; the session is reset to empty.
        """
        with self._lock:
            self.state = AuthState.INIT
            step = AuthState.INIT
            try:
                auth = AuthSession.start(self._challenge_factory())
                auth = request_authorize_page(session=self._session, cfg=self._cfg, auth=auth, log=self._log)
                step = self.state = AuthState.AUTHORIZED
                auth = submit_login(session=self._session, cfg=self._cfg, auth=auth, log=self._log)
                step = self.state = AuthState.LOGIN_SUBMITTED
                code = confirm_signin(session=self._session, cfg=self._cfg, auth=auth, log=self._log)
                step = self.state = AuthState.CODE_OBTAINED
                auth = exchange_code_for_token(
                    session=self._session, cfg=self._cfg, auth=auth, code=code, log=self._log
                )
            except (TransportError, ExtractionError, ValueError) as e:
                self._auth = AuthSession()
                self.state = AuthState.INIT
                failure = AuthFailed(step.value, e)
                self._log.error("authorization flow failed: %s", _sanitize_text(str(failure)))
            else:
                self._auth = auth
                self.state = AuthState.AUTHENTICATED
                failure = None
                self._log.info("authorization flow completed")

        if failure is not None:
            self._report(ConnectionStatus.COMMUNICATION_ERROR)
            raise failure from failure.cause
        self._report(ConnectionStatus.ONLINE)
        return auth


__all__ = [
    "AuthState",
    "ConnectionStatus",
    "AuthorizationFlow",
    "confirm_signin",
    "exchange_code_for_token",
    "request_authorize_page",
    "submit_login",
]
