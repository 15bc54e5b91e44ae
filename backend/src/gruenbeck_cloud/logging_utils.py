"""
Logging setup and secret redaction shared by every module.

Every log record carries a run_id so multi-step flows (authorize → login →
confirm → token → realtime) can be correlated across threads.
"""

from __future__ import annotations

import logging
import re


class _RunIdFilter(logging.Filter):
    """
    Ensure every log record has a run_id attribute for formatting.
    """

    def __init__(self, run_id: str) -> None:
        super().__init__()
        self._run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging uses `filter` name
        if not hasattr(record, "run_id"):
            record.run_id = self._run_id
        return True


def _coerce_log_level(level: str) -> int:
    level_upper = (level or "").strip().upper()
    if not level_upper:
        return logging.INFO
    return logging._nameToLevel.get(level_upper, logging.INFO)


def configure_logging(*, run_id: str, level: str) -> logging.LoggerAdapter:
    """
    Configure logging for CLI and bridge runs.

    - Uses root logger configuration only if nothing is configured yet.
    - Adds a run_id to all records, including records emitted on the
      websocket I/O thread and by third-party libraries.
    """
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=_coerce_log_level(level),
            format="%(asctime)s %(levelname)s [%(threadName)s] [%(name)s] [run=%(run_id)s] %(message)s",
        )
    else:
        root.setLevel(_coerce_log_level(level))

    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):  # type: ignore[no-untyped-def]
        record = old_factory(*args, **kwargs)
        if not hasattr(record, "run_id"):
            record.run_id = run_id
        return record

    logging.setLogRecordFactory(record_factory)

    for h in root.handlers:
        h.addFilter(_RunIdFilter(run_id))

    # run_id is set by the record factory; passing it again via `extra`
    # would raise KeyError ("Attempt to overwrite 'run_id' in LogRecord").
    return logging.LoggerAdapter(logging.getLogger("gruenbeck_cloud"), {})


def get_logger(name: str) -> logging.LoggerAdapter:
    """Return an adapter for modules that are not handed a `log` by their caller."""
    return logging.LoggerAdapter(logging.getLogger(name), {})


_SENSITIVE_KEYS = {
    "password",
    "logonidentifier",
    "csrf",
    "csrf_token",
    "x-csrf-token",
    "access_token",
    "accesstoken",
    "refresh_token",
    "id_token",
    "client_secret",
    "code_verifier",
    "code",
    "authorization",
    "cookie",
}


def _redact(value: object) -> str:
    """
    Redact potentially sensitive values for safe logging.

    Keeps a short prefix/suffix; use for identifiers, never for secrets.
    """
    if value is None:
        return "<none>"
    s = str(value)
    if not s:
        return "<empty>"
    if len(s) <= 8:
        return "<redacted>"
    return f"{s[:3]}...{s[-3:]}"


def _redact_sensitive(value: object) -> str:
    """
    Redact fully for secret-bearing fields (tokens, passwords, codes).
    """
    if value is None:
        return "<none>"
    s = str(value)
    if not s:
        return "<empty>"
    return "<redacted>"


def _sanitize_mapping(d: dict) -> dict:
    """
    Return a shallow copy safe for logging (redacts sensitive keys).
    """
    safe: dict = {}
    for k, v in d.items():
        if str(k).lower() in _SENSITIVE_KEYS:
            safe[k] = _redact_sensitive(v)
        else:
            safe[k] = v
    return safe


def _sanitize_obj(obj: object) -> object:
    """
    Deep-sanitize JSON-like objects (dict/list/tuple) for safe logging.
    """
    if isinstance(obj, dict):
        out: dict = {}
        for k, v in obj.items():
            if str(k).lower() in _SENSITIVE_KEYS:
                out[k] = _redact_sensitive(v)
            else:
                out[k] = _sanitize_obj(v)
        return out
    if isinstance(obj, list):
        return [_sanitize_obj(v) for v in obj]
    if isinstance(obj, tuple):
        return tuple(_sanitize_obj(v) for v in obj)
    return obj


_TEXT_SCRUBBERS = [
    # JSON-ish tokens: "access_token":"..." / "accessToken":"..." / "csrf":"..."
    (re.compile(r'("(?:access_token|accessToken|refresh_token|id_token|csrf)"\s*:\s*")[^"]+(")', re.IGNORECASE), r"\1<redacted>\2"),
    # Form/query-ish tokens: access_token=...
    (re.compile(r"((?:access_token|refresh_token|id_token|csrf_token|code_verifier)=)[^&\s\"]+", re.IGNORECASE), r"\1<redacted>"),
    # Authorization codes, plain or percent-encoded (code%3d...).
    (re.compile(r"(code(?:=|%3d))[^&\"\s<>]+", re.IGNORECASE), r"\1<redacted>"),
    (re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE), r"\1<redacted>"),
]


def _sanitize_text(text: str) -> str:
    """
    Best-effort scrub of OAuth and hub token fields in free-form text.

    Prefers over-redaction to accidental leaks.
    """
    if not text:
        return text
    scrubbed = text
    for pattern, replacement in _TEXT_SCRUBBERS:
        scrubbed = pattern.sub(replacement, scrubbed)
    return scrubbed
