"""
Tests for the data collector and snapshot repository.
"""

from datetime import date, timedelta

import httpx
import pytest
from sqlalchemy import select

from analytics.collector import DataCollector
from connectors.errors import CredentialChanged, ReauthRequired, UpstreamError
from connectors.twitch_api import TwitchAPIClient
from database.models import ChannelAnalytics, VideoAnalytics
from utils.schemas import ChannelSnapshot

from conftest import make_token

VIDEOS = [
    {"id": "v1", "title": "Long stream", "type": "archive", "view_count": 40, "duration": "2h15m",
     "published_at": "2024-04-30T18:00:00Z"},
    {"id": "v2", "title": "Short stream", "type": "archive", "view_count": 2, "duration": "45m12s",
     "published_at": "2024-04-29T18:00:00Z"},
]


def _api(subscriptions=(200, {"total": 3, "data": []}), seen=None):
    routes = {
        "/helix/channels": (200, {"data": [{"broadcaster_id": "ext-1", "broadcaster_name": "Streamer",
                                            "game_name": "Chess", "title": "Live"}]}),
        "/helix/channels/followers": (200, {"total": 150, "data": []}),
        "/helix/subscriptions": subscriptions,
        "/helix/videos": (200, {"data": VIDEOS}),
    }

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        status_code, body = routes[request.url.path]
        return httpx.Response(status_code, json=body)

    return TwitchAPIClient("client-id", transport=httpx.MockTransport(handler))


class TestCollectChannelData:
    @pytest.mark.asyncio
    async def test_snapshot_saved(self, vault, repository, session_factory):
        await vault.store_tokens("owner-1", "ext-1", make_token("acc"))
        seen = []
        collector = DataCollector(vault, _api(seen=seen), repository)

        snapshot = await collector.collect_channel_data("owner-1")

        assert snapshot.followers_count == 150
        assert snapshot.subscriber_count == 3
        assert snapshot.video_count == 2
        assert snapshot.total_views == 42
        assert snapshot.metadata["game_name"] == "Chess"
        assert all(r.headers["Authorization"] == "Bearer acc" for r in seen)
        assert all(r.url.params.get("broadcaster_id", "ext-1") == "ext-1" for r in seen)
        latest = await repository.latest_channel_snapshot("owner-1")
        assert latest["followers_count"] == 150

    @pytest.mark.asyncio
    async def test_subscribers_forbidden_counts_as_zero(self, vault, repository):
        await vault.store_tokens("owner-1", "ext-1", make_token())
        collector = DataCollector(vault, _api(subscriptions=(403, {"message": "forbidden"})), repository)
        snapshot = await collector.collect_channel_data("owner-1")
        assert snapshot.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_subscriber_server_error_propagates(self, vault, repository):
        await vault.store_tokens("owner-1", "ext-1", make_token())
        collector = DataCollector(vault, _api(subscriptions=(500, {})), repository)
        with pytest.raises(UpstreamError):
            await collector.collect_channel_data("owner-1")

    @pytest.mark.asyncio
    async def test_dead_refresh_token_requires_reauth(self, vault, repository, connector):
        await vault.store_tokens("owner-1", "ext-1", make_token(expires_in=timedelta(minutes=-5)))
        connector.refresh_error = UpstreamError("invalid refresh token", status_code=400)
        collector = DataCollector(vault, _api(), repository)
        with pytest.raises(ReauthRequired):
            await collector.collect_channel_data("owner-1")


class TestCollectVideos:
    @pytest.mark.asyncio
    async def test_videos_upserted_with_durations(self, vault, repository, session_factory):
        await vault.store_tokens("owner-1", "ext-1", make_token())
        collector = DataCollector(vault, _api(), repository)

        assert await collector.collect_video_data("owner-1") == 2
        assert await collector.collect_video_data("owner-1") == 2

        async with session_factory() as session:
            rows = (await session.execute(
                select(VideoAnalytics).order_by(VideoAnalytics.video_id)
            )).scalars().all()
        assert [(r.video_id, r.duration_seconds) for r in rows] == [("v1", 8100), ("v2", 2712)]

    @pytest.mark.asyncio
    async def test_collect_all(self, vault, repository):
        await vault.store_tokens("owner-1", "ext-1", make_token())
        result = await DataCollector(vault, _api(), repository).collect_all("owner-1")
        assert result["videos_saved"] == 2
        assert result["channel"]["followers_count"] == 150


class TestRepository:
    @pytest.mark.asyncio
    async def test_one_snapshot_per_owner_and_day(self, repository, session_factory):
        day = date(2024, 5, 1)
        await repository.save_channel_snapshot(ChannelSnapshot(owner_id="o1", followers_count=1), day=day)
        await repository.save_channel_snapshot(ChannelSnapshot(owner_id="o1", followers_count=2), day=day)

        async with session_factory() as session:
            rows = (await session.execute(select(ChannelAnalytics))).scalars().all()
        assert [(r.owner_id, r.followers_count) for r in rows] == [("o1", 2)]

    @pytest.mark.asyncio
    async def test_purge_is_owner_scoped(self, repository):
        day = date(2024, 5, 1)
        await repository.save_channel_snapshot(ChannelSnapshot(owner_id="o1"), day=day)
        await repository.save_channel_snapshot(ChannelSnapshot(owner_id="o2"), day=day)

        counts = await repository.purge_owner_data("o1")

        assert counts["channel_analytics"] == 1
        assert await repository.has_analytics("o1") is False
        assert await repository.has_analytics("o2") is True


class TestRelinkDuringCollection:
    def _relink_during_videos(self, api, vault, tasks):
        get_videos = api.get_videos

        async def relinking_get_videos(*args, **kwargs):
            videos = await get_videos(*args, **kwargs)
            await vault.store_tokens("owner-1", "ext-2", make_token("a-E2", "r-E2"))
            assert await tasks.drain(timeout=5)
            return videos

        api.get_videos = relinking_get_videos

    @pytest.mark.asyncio
    async def test_videos_for_old_account_not_saved(self, vault, repository, tasks):
        await vault.store_tokens("owner-1", "ext-1", make_token("a-E1"))
        api = _api()
        self._relink_during_videos(api, vault, tasks)

        with pytest.raises(CredentialChanged):
            await DataCollector(vault, api, repository).collect_video_data("owner-1")

        counts = await repository.count_rows("owner-1")
        assert counts["video_analytics"] == 0

    @pytest.mark.asyncio
    async def test_snapshot_for_old_account_not_saved(self, vault, repository, tasks):
        await vault.store_tokens("owner-1", "ext-1", make_token("a-E1"))
        api = _api()
        self._relink_during_videos(api, vault, tasks)

        with pytest.raises(CredentialChanged):
            await DataCollector(vault, api, repository).collect_channel_data("owner-1")

        assert await repository.has_analytics("owner-1") is False

    @pytest.mark.asyncio
    async def test_repository_rejects_write_for_unlinked_account(self, vault, repository):
        await vault.store_tokens("owner-1", "ext-2", make_token())

        with pytest.raises(CredentialChanged):
            await repository.save_channel_snapshot(
                ChannelSnapshot(owner_id="owner-1"), external_account_id="ext-1",
            )
        await repository.save_channel_snapshot(
            ChannelSnapshot(owner_id="owner-1"), external_account_id="ext-2",
        )
        assert await repository.has_analytics("owner-1") is True
