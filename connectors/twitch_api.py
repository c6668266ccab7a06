"""
TwitchAPIClient — typed calls into the Twitch Helix API.

Every call carries the owner's bearer token and a bounded timeout.  Any
non-2xx response is raised as ``UpstreamError`` with the status code and
endpoint; transport failures (timeouts, connection resets) are raised the
same way with ``status_code=None``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from connectors.errors import UpstreamError
from utils.schemas import ChannelInfo, TokenValidation, TwitchUser, VideoInfo

logger = logging.getLogger(__name__)

_HELIX_API = "https://api.twitch.tv/helix"
_VALIDATE_URL = "https://id.twitch.tv/oauth2/validate"


class TwitchAPIClient:
    def __init__(
        self,
        client_id: str,
        *,
        timeout: float = 30.0,
        base_url: str = _HELIX_API,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client_id = client_id
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _get(
        self,
        url: str,
        access_token: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        auth_scheme: str = "Bearer",
    ) -> Dict[str, Any]:
        headers = {
            "Client-Id": self._client_id,
            "Authorization": f"{auth_scheme} {access_token}",
        }
        try:
            async with self._client() as client:
                resp = await client.get(url, headers=headers, params=params)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"twitch request failed: {exc}", endpoint=url) from exc

        if resp.status_code // 100 != 2:
            raise UpstreamError(
                f"twitch API error: {resp.status_code}",
                status_code=resp.status_code,
                endpoint=url,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError("twitch API returned invalid JSON", status_code=resp.status_code, endpoint=url) from exc

    async def _helix(self, endpoint: str, access_token: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._get(f"{self._base_url}{endpoint}", access_token, params)

    @staticmethod
    def _parse(model, payload: Any, endpoint: str):
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            logger.error("Malformed %s payload from Twitch: %s", endpoint, exc)
            raise UpstreamError(f"malformed payload from {endpoint}", endpoint=endpoint) from exc

    # ── Calls ───────────────────────────────────────────────────────────

    async def get_user_info(self, access_token: str) -> TwitchUser:
        data = (await self._helix("/users", access_token)).get("data") or []
        if not data:
            raise UpstreamError("no user data returned", endpoint="/users")
        return self._parse(TwitchUser, data[0], "/users")

    async def get_channel_info(self, access_token: str, broadcaster_id: str) -> ChannelInfo:
        payload = await self._helix("/channels", access_token, {"broadcaster_id": broadcaster_id})
        data = payload.get("data") or []
        if not data:
            raise UpstreamError("no channel data returned", endpoint="/channels")
        return self._parse(ChannelInfo, data[0], "/channels")

    async def get_follower_count(self, access_token: str, broadcaster_id: str) -> int:
        payload = await self._helix(
            "/channels/followers", access_token, {"broadcaster_id": broadcaster_id, "first": 1},
        )
        return int(payload.get("total") or 0)

    async def get_subscriber_count(self, access_token: str, broadcaster_id: str) -> int:
        payload = await self._helix(
            "/subscriptions", access_token, {"broadcaster_id": broadcaster_id, "first": 1},
        )
        if "total" in payload:
            return int(payload["total"] or 0)
        return len(payload.get("data") or [])

    async def get_videos(
        self,
        access_token: str,
        user_id: str,
        video_type: str = "archive",
        limit: int = 50,
    ) -> List[VideoInfo]:
        payload = await self._helix(
            "/videos",
            access_token,
            {"user_id": user_id, "type": video_type, "first": min(max(limit, 1), 100)},
        )
        return [self._parse(VideoInfo, item, "/videos") for item in payload.get("data") or []]

    async def validate_token(self, access_token: str) -> Optional[TokenValidation]:
        """
        Ask Twitch whether *access_token* is still valid.

        Returns None for a rejected token (401); other failures raise.
        """
        try:
            payload = await self._get(_VALIDATE_URL, access_token, auth_scheme="OAuth")
        except UpstreamError as exc:
            if exc.status_code == 401:
                return None
            raise
        return self._parse(TokenValidation, payload, "/oauth2/validate")
