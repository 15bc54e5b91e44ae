"""
Error taxonomy for the Grünbeck cloud client.

Scheduled work catches these at the tick boundary; nothing here is meant to
take the process down.
"""

from __future__ import annotations

from typing import Optional


class GruenbeckCloudError(RuntimeError):
    """Base class for every error raised by this package."""


class CliError(GruenbeckCloudError):
    """Expected CLI failure with a user-facing message."""


class CryptoUnavailable(GruenbeckCloudError):
    """The SHA-256 primitive needed for the PKCE challenge is missing."""


class ExtractionError(GruenbeckCloudError):
    """A marker-based scrape of a provider page found nothing usable."""


class TransportError(GruenbeckCloudError):
    """Connect/send/timeout failure at the HTTP or WebSocket layer."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthFailed(GruenbeckCloudError):
    """One step of the authorization flow failed; the whole flow is void."""

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"authorization failed at step {step!r}: {cause}")
        self.step = step
        self.cause = cause


class EventDecodeError(GruenbeckCloudError):
    """An inbound realtime frame could not be decoded into an event."""


class NotAuthenticated(GruenbeckCloudError):
    """An authenticated call was attempted without an access token."""
