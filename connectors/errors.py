"""
Error taxonomy for the connector layer.

Handlers map these onto exactly two user-facing banners: *connect*
(``CredentialNotFound``) and *reconnect* (``ReauthRequired``).  Everything
else is either an upstream failure or an operator problem.
"""

from __future__ import annotations

from typing import Optional


class ConnectorError(Exception):
    """Base class for every error raised by the connector layer."""


class CredentialNotFound(ConnectorError):
    """The owner has no stored credential — a first connect is required."""

    def __init__(self, owner_id: str):
        super().__init__(f"no stored credential for owner {owner_id}")
        self.owner_id = owner_id


class ReauthRequired(ConnectorError):
    """The stored credential could not be refreshed and has been removed."""

    def __init__(self, owner_id: str, reason: str = ""):
        message = f"re-authentication required for owner {owner_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.owner_id = owner_id
        self.reason = reason


class CredentialChanged(ConnectorError):
    """The owner was relinked to another external account while work for the old one was in flight."""

    def __init__(self, owner_id: str, expected_account_id: str):
        super().__init__(
            f"owner {owner_id} is no longer linked to external account {expected_account_id}"
        )
        self.owner_id = owner_id
        self.expected_account_id = expected_account_id


class UpstreamError(ConnectorError):
    """Non-2xx response (or transport failure) from the streaming platform."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        endpoint: str = "",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class TokenExchangeError(UpstreamError):
    """Code exchange or refresh failed, or returned a malformed token payload."""


class EncryptionError(ConnectorError):
    """Corrupt ciphertext or a misconfigured encryption key."""


class SessionExpiredOrInvalid(ConnectorError):
    """OAuth CSRF state is unknown, already consumed, or expired."""
