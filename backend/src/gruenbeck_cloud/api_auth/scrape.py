"""
Marker-based extraction from the identity provider's pages.

The authorize page embeds its settings as a JavaScript object literal and the
confirm page carries the authorization code inside an HTML redirect link;
neither is valid JSON/HTML worth parsing, so values are located by a literal
marker and the next delimiter. This module is the only place that knows the
page shapes.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import ExtractionError

CODE_START_MARKER = "code%3d"
CODE_END_MARKER = ">here"


@dataclass(frozen=True)
class AuthFields:
    csrf: str
    trans_id: str
    policy: str
    tenant: str


def _find_value(body: str, key: str) -> str:
    """
    Return the quoted value following `key:` (key quoted or bare).

    Scans for the first occurrence of the key that is followed by a colon,
    then takes the text between the next pair of double quotes.
    """
    search_from = 0
    while True:
        idx = body.find(key, search_from)
        if idx < 0:
            raise ExtractionError(f"marker {key!r} not found in authorize page")
        after = idx + len(key)
        # Allow `"key":` as well as `key:`.
        if body.startswith('"', after):
            after += 1
        rest = body[after:].lstrip()
        if rest.startswith(":"):
            colon = body.index(":", after)
            start_quote = body.find('"', colon + 1)
            if start_quote < 0 or body[colon + 1:start_quote].strip():
                raise ExtractionError(f"value of {key!r} is not a quoted string")
            end_quote = body.find('"', start_quote + 1)
            if end_quote < 0:
                raise ExtractionError(f"value of {key!r} is not terminated")
            value = body[start_quote + 1:end_quote]
            if not value:
                raise ExtractionError(f"value of {key!r} is empty")
            return value
        search_from = idx + len(key)


def extract_auth_fields(body: str) -> AuthFields:
    """
    Extract csrf, transId, policy and tenant from the authorize page.

    Raises:
        ExtractionError: any of the four values is missing or malformed.
    """
    if not body:
        raise ExtractionError("authorize page is empty")
    return AuthFields(
        csrf=_find_value(body, "csrf"),
        trans_id=_find_value(body, "transId"),
        policy=_find_value(body, "policy"),
        tenant=_find_value(body, "tenant"),
    )


def extract_authorization_code(body: str) -> str:
    """
    Extract the authorization code from the confirm page.

    The code runs from just after `code%3d` up to the character before
    `>here` (the closing quote of the redirect link).

    Raises:
        ExtractionError: a marker is missing or the range is empty.
    """
    start = body.find(CODE_START_MARKER) if body else -1
    if start < 0:
        raise ExtractionError(f"marker {CODE_START_MARKER!r} not found in confirm page")
    start += len(CODE_START_MARKER)
    end = body.find(CODE_END_MARKER, start)
    if end < 0:
        raise ExtractionError(f"marker {CODE_END_MARKER!r} not found after the code")
    end -= 1
    if end <= start:
        raise ExtractionError("authorization code is empty")
    return body[start:end]


__all__ = ["AuthFields", "extract_auth_fields", "extract_authorization_code"]
