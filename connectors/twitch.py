"""
TwitchConnector — OAuth2 for the Twitch API.

Token endpoint payloads are validated through one ``TokenResponse`` model;
anything that does not fit is logged and rejected rather than guessed at.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from connectors.base import BaseConnector
from connectors.errors import TokenExchangeError
from connectors.twitch_api import TwitchAPIClient
from utils.schemas import OAuthToken, TokenResponse

logger = logging.getLogger(__name__)

# Twitch OAuth2 endpoints
_TWITCH_AUTH_URL = "https://id.twitch.tv/oauth2/authorize"
_TWITCH_TOKEN_URL = "https://id.twitch.tv/oauth2/token"
_TWITCH_REVOKE_URL = "https://id.twitch.tv/oauth2/revoke"

_SCOPE_DESCRIPTIONS = {
    "user:read:email": "Access your email address",
    "user:read:broadcast": "View your stream key and preferences",
    "channel:read:subscriptions": "View your subscriber list and subscriber information",
    "moderator:read:followers": "View your follower list",
    "clips:edit": "Create and edit clips from your streams",
    "channel:read:redemptions": "View channel point redemptions",
    "analytics:read:extensions": "View analytics data for your extensions",
    "analytics:read:games": "View analytics data for games",
}


class TwitchConnector(BaseConnector):
    """OAuth2 connector for Twitch."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_base: str,
        scopes: List[str],
        *,
        api: Optional[TwitchAPIClient] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_base = redirect_base.rstrip("/")
        self._scopes = list(scopes)
        self._timeout = timeout
        self._transport = transport
        self._api = api or TwitchAPIClient(client_id, timeout=timeout, transport=transport)

    @property
    def provider_name(self) -> str:
        return "twitch"

    @property
    def display_name(self) -> str:
        return "Twitch"

    @property
    def scopes(self) -> List[str]:
        return self._scopes

    @property
    def scope_descriptions(self) -> Dict[str, str]:
        return _SCOPE_DESCRIPTIONS

    def is_configured(self) -> bool:
        return bool(self._client_id and self._client_secret and self._redirect_base)

    def _redirect_uri(self) -> str:
        return f"{self._redirect_base}/auth/twitch/callback"

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri(),
            "response_type": "code",
            "scope": " ".join(self._scopes),
            "state": state,
        }
        return f"{_TWITCH_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, data: Dict[str, str], action: str) -> OAuthToken:
        form = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            **data,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(
                    _TWITCH_TOKEN_URL, data=form, headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise TokenExchangeError(f"Twitch {action} request failed: {exc}", endpoint=_TWITCH_TOKEN_URL) from exc

        if resp.status_code // 100 != 2:
            raise TokenExchangeError(
                f"Twitch {action} failed with status {resp.status_code}",
                status_code=resp.status_code,
                endpoint=_TWITCH_TOKEN_URL,
            )

        try:
            parsed = TokenResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            logger.error("Rejected malformed Twitch %s response: %s", action, exc)
            raise TokenExchangeError(
                f"malformed Twitch {action} response",
                status_code=resp.status_code,
                endpoint=_TWITCH_TOKEN_URL,
            ) from exc
        return parsed.to_token()

    async def exchange_code(self, code: str) -> OAuthToken:
        return await self._token_request(
            {
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self._redirect_uri(),
            },
            "code exchange",
        )

    async def refresh_access_token(self, refresh_token: str) -> OAuthToken:
        if not refresh_token:
            raise TokenExchangeError("no refresh token available", endpoint=_TWITCH_TOKEN_URL)
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "token refresh",
        )

    async def resolve_account_id(self, access_token: str) -> str:
        user = await self._api.get_user_info(access_token)
        return user.id

    async def revoke_token(self, access_token: str) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(
                    _TWITCH_REVOKE_URL,
                    data={"client_id": self._client_id, "token": access_token},
                )
            return resp.status_code == 200
        except httpx.HTTPError as exc:
            logger.warning("Twitch token revocation failed: %s", exc)
            return False
