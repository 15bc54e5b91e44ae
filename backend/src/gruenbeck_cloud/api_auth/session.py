"""
The authentication session carried through the authorization flow.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from ..logging_utils import _redact_sensitive
from .pkce import CodeChallenge
from .scrape import AuthFields


@dataclass(frozen=True)
class AuthSession:
    """
    Everything one flow run learns, from the PKCE pair to the bearer tokens.

    Instances are immutable: each flow step returns a new value and the
    orchestrator swaps the whole session on success or reset.
    """

    code_verifier: str = ""
    code_challenge: str = ""
    csrf: str = ""
    trans_id: str = ""
    policy: str = ""
    tenant: str = ""
    access_token: str = ""
    refresh_token: str = ""
    last_update: Optional[float] = None

    @classmethod
    def start(cls, challenge: CodeChallenge) -> "AuthSession":
        return cls(code_verifier=challenge.verifier, code_challenge=challenge.challenge)

    def with_auth_fields(self, fields: AuthFields) -> "AuthSession":
        return replace(
            self,
            csrf=fields.csrf,
            trans_id=fields.trans_id,
            policy=fields.policy,
            tenant=fields.tenant,
        )

    def with_tokens(self, *, access_token: str, refresh_token: str, now: float) -> "AuthSession":
        return replace(self, access_token=access_token, refresh_token=refresh_token, last_update=now)

    @property
    def authenticated(self) -> bool:
        return bool(self.access_token)

    def __repr__(self) -> str:
        return (
            "AuthSession("
            f"csrf={_redact_sensitive(self.csrf)}, trans_id={_redact_sensitive(self.trans_id)}, "
            f"policy={self.policy!r}, tenant={self.tenant!r}, "
            f"access_token={_redact_sensitive(self.access_token)}, "
            f"refresh_token={_redact_sensitive(self.refresh_token)}, last_update={self.last_update!r})"
        )


__all__ = ["AuthSession"]
