"""
PKCE code challenge generation for the Grünbeck B2C tenant.

The provider's MSAL flow only accepts verifiers and challenges that contain
no '+', '/' or '=' characters, so pairs are drawn by rejection sampling: a
pair is regenerated until both strings are clean. With those characters
excluded, standard base64 and base64url produce the same text.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string
from dataclasses import dataclass
from typing import Any, Optional

from ..errors import CryptoUnavailable

VERIFIER_SOURCE_LENGTH = 64
_ALPHABET = string.digits + string.ascii_lowercase + string.ascii_uppercase


@dataclass(frozen=True)
class CodeChallenge:
    verifier: str
    challenge: str


def _sha256(data: bytes) -> bytes:
    try:
        digest = hashlib.new("sha256")
    except ValueError as e:
        raise CryptoUnavailable("SHA-256 is not available in this interpreter") from e
    digest.update(data)
    return digest.digest()


def _is_clean(verifier: str, challenge: str) -> bool:
    if "+" in verifier or "/" in verifier:
        return False
    return not ("+" in challenge or "/" in challenge or "=" in challenge)


def generate_code_challenge(rng: Optional[Any] = None) -> CodeChallenge:
    """
    Draw a verifier/challenge pair acceptable to the provider.

    Args:
        rng: Object with a `choice()` method (e.g. `random.Random`); defaults
            to the system CSPRNG.

    Raises:
        CryptoUnavailable: SHA-256 cannot be instantiated.
    """
    chooser = rng if rng is not None else secrets.SystemRandom()
    while True:
        source = "".join(chooser.choice(_ALPHABET) for _ in range(VERIFIER_SOURCE_LENGTH))
        verifier = base64.b64encode(source.encode("ascii")).decode("ascii").replace("=", "")
        encoded = base64.b64encode(_sha256(verifier.encode("ascii"))).decode("ascii")
        # A SHA-256 digest always encodes to 44 characters with exactly one
        # trailing pad character; dropping the last character removes it.
        challenge = encoded[:-1]
        if _is_clean(verifier, challenge):
            return CodeChallenge(verifier=verifier, challenge=challenge)


__all__ = ["CodeChallenge", "generate_code_challenge"]
