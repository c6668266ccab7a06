"""
DataCollector — pull one owner's numbers from Twitch and store a snapshot.

Every call starts from ``CredentialVault.get_valid_credential`` so an expired
token is refreshed (or the credential dropped with ``ReauthRequired``)
before any Helix request is made.  Rows are saved only while the owner is
still linked to the account the numbers were fetched for; a relink in the
middle of a run fails it with ``CredentialChanged``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from analytics.repository import AnalyticsRepository
from connectors.errors import UpstreamError
from connectors.token_manager import CredentialVault
from connectors.twitch_api import TwitchAPIClient
from utils.schemas import ChannelSnapshot

logger = logging.getLogger(__name__)

VIDEO_LIMIT = 50


class DataCollector:
    def __init__(
        self,
        vault: CredentialVault,
        api: TwitchAPIClient,
        repository: AnalyticsRepository,
    ):
        self._vault = vault
        self._api = api
        self._repository = repository

    async def _credentials(self, owner_id: str):
        broadcaster_id, token = await self._vault.get_valid_credential(owner_id)
        return token.access_token, broadcaster_id

    async def collect_channel_data(self, owner_id: str) -> ChannelSnapshot:
        access_token, broadcaster_id = await self._credentials(owner_id)

        channel = await self._api.get_channel_info(access_token, broadcaster_id)
        followers = await self._api.get_follower_count(access_token, broadcaster_id)

        # Only affiliates and partners have subscribers.
        try:
            subscribers = await self._api.get_subscriber_count(access_token, broadcaster_id)
        except UpstreamError as exc:
            if exc.status_code not in (401, 403):
                raise
            logger.info("Subscriber count unavailable for owner %s (%s)", owner_id, exc.status_code)
            subscribers = 0

        videos = await self._api.get_videos(access_token, broadcaster_id, limit=VIDEO_LIMIT)

        snapshot = ChannelSnapshot(
            owner_id=owner_id,
            followers_count=followers,
            total_views=sum(v.view_count for v in videos),
            subscriber_count=subscribers,
            video_count=len(videos),
            metadata={
                "broadcaster_id": channel.broadcaster_id,
                "broadcaster_name": channel.broadcaster_name,
                "game_name": channel.game_name,
                "title": channel.title,
            },
        )
        await self._repository.save_channel_snapshot(snapshot, external_account_id=broadcaster_id)
        return snapshot

    async def collect_video_data(self, owner_id: str) -> int:
        access_token, broadcaster_id = await self._credentials(owner_id)
        videos = await self._api.get_videos(access_token, broadcaster_id, video_type="archive", limit=VIDEO_LIMIT)
        return await self._repository.save_videos(
            owner_id, videos[:VIDEO_LIMIT], external_account_id=broadcaster_id,
        )

    async def collect_all(self, owner_id: str) -> Dict[str, Any]:
        snapshot = await self.collect_channel_data(owner_id)
        saved = await self.collect_video_data(owner_id)
        logger.info("Collected analytics for owner %s: %d videos", owner_id, saved)
        return {"channel": snapshot.model_dump(), "videos_saved": saved}
