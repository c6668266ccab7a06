"""
BaseConnector — abstract OAuth2 provider contract.

A connector knows how to build the authorization URL, exchange a code,
refresh a token and resolve which external account a token belongs to.
It never touches storage; that is the vault's job.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List

from utils.schemas import OAuthToken


class BaseConnector(ABC):
    """Abstract base for OAuth2 identity providers."""

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug used in routes: 'twitch'."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes requested on connect."""
        ...

    @property
    def scope_descriptions(self) -> Dict[str, str]:
        """Human-readable explanation per scope, shown before consent."""
        return {}

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str) -> str:
        """Build the provider's authorization URL carrying *state*."""
        ...

    @abstractmethod
    async def exchange_code(self, code: str) -> OAuthToken:
        """
        Exchange the authorization code for tokens.

        Raises ``TokenExchangeError`` on a non-2xx or malformed response.
        """
        ...

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> OAuthToken:
        """
        Refresh an expiring access token.

        The returned token may carry an empty ``refresh_token`` when the
        provider does not rotate it.
        """
        ...

    @abstractmethod
    async def resolve_account_id(self, access_token: str) -> str:
        """Return the external account id the token was issued for."""
        ...

    async def revoke_token(self, access_token: str) -> bool:
        """Revoke at the provider; False when unsupported."""
        return False

    # ── Helpers ─────────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        return True
