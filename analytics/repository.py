"""
AnalyticsRepository — writes and reads the owner-scoped snapshot tables.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.errors import CredentialChanged
from database.helpers import upsert, utcnow
from database.models import (
    SNAPSHOT_MODELS,
    CacheEntry,
    ChannelAnalytics,
    StoredCredential,
    VideoAnalytics,
)
from utils.duration import parse_duration_to_seconds
from utils.schemas import ChannelSnapshot, VideoInfo

logger = logging.getLogger(__name__)


class AnalyticsRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ── Writes ──────────────────────────────────────────────────────────

    @staticmethod
    async def _ensure_linked(session: AsyncSession, owner_id: str, external_account_id: Optional[str]) -> None:
        """
        Raise ``CredentialChanged`` unless *owner_id* is still linked to
        *external_account_id*.  The credential row stays locked until the
        surrounding transaction ends, so a relink (and the purge it
        schedules) cannot slip in before this write commits.
        """
        if external_account_id is None:
            return
        current = (
            await session.execute(
                select(StoredCredential.external_account_id)
                .where(StoredCredential.owner_id == owner_id)
                .with_for_update()
            )
        ).scalar_one_or_none()
        if current != external_account_id:
            raise CredentialChanged(owner_id, external_account_id)

    async def save_channel_snapshot(
        self,
        snapshot: ChannelSnapshot,
        day: Optional[date] = None,
        *,
        external_account_id: Optional[str] = None,
    ) -> None:
        """
        Upsert the owner's channel numbers for *day* (today, UTC, by default).

        With ``external_account_id`` nothing is written unless the owner is
        still linked to that account.
        """
        day = day or utcnow().date()
        async with self._session_factory() as session:
            async with session.begin():
                await self._ensure_linked(session, snapshot.owner_id, external_account_id)
                stmt = upsert(session, ChannelAnalytics).values(
                    owner_id=snapshot.owner_id,
                    date=day,
                    followers_count=snapshot.followers_count,
                    total_views=snapshot.total_views,
                    subscriber_count=snapshot.subscriber_count,
                    video_count=snapshot.video_count,
                    created_at=utcnow(),
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[ChannelAnalytics.owner_id, ChannelAnalytics.date],
                    set_={
                        "followers_count": stmt.excluded.followers_count,
                        "total_views": stmt.excluded.total_views,
                        "subscriber_count": stmt.excluded.subscriber_count,
                        "video_count": stmt.excluded.video_count,
                    },
                )
                await session.execute(stmt)
        logger.info(
            "Saved channel snapshot for owner %s (%s): followers=%d subscribers=%d videos=%d",
            snapshot.owner_id, day, snapshot.followers_count,
            snapshot.subscriber_count, snapshot.video_count,
        )

    async def save_videos(
        self,
        owner_id: str,
        videos: List[VideoInfo],
        *,
        external_account_id: Optional[str] = None,
    ) -> int:
        """Upsert each video on (owner, video id).  Returns how many were written."""
        if not videos:
            return 0
        now = utcnow()
        async with self._session_factory() as session:
            async with session.begin():
                await self._ensure_linked(session, owner_id, external_account_id)
                for video in videos:
                    stmt = upsert(session, VideoAnalytics).values(
                        owner_id=owner_id,
                        video_id=video.id,
                        title=video.title,
                        video_type=video.type or None,
                        duration_seconds=parse_duration_to_seconds(video.duration),
                        view_count=video.view_count,
                        thumbnail_url=video.thumbnail_url or None,
                        published_at=video.published_at or video.created_at,
                        created_at=now,
                        updated_at=now,
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[VideoAnalytics.owner_id, VideoAnalytics.video_id],
                        set_={
                            "title": stmt.excluded.title,
                            "video_type": stmt.excluded.video_type,
                            "duration_seconds": stmt.excluded.duration_seconds,
                            "view_count": stmt.excluded.view_count,
                            "thumbnail_url": stmt.excluded.thumbnail_url,
                            "published_at": stmt.excluded.published_at,
                            "updated_at": now,
                        },
                    )
                    await session.execute(stmt)
        logger.info("Saved %d videos for owner %s", len(videos), owner_id)
        return len(videos)

    async def purge_owner_data(self, owner_id: str) -> Dict[str, int]:
        """
        Delete every snapshot row and cache entry for *owner_id* in one
        transaction.  Returns rows removed per table.
        """
        counts: Dict[str, int] = {}
        async with self._session_factory() as session:
            async with session.begin():
                for model in (*SNAPSHOT_MODELS, CacheEntry):
                    result = await session.execute(delete(model).where(model.owner_id == owner_id))
                    counts[model.__tablename__] = result.rowcount or 0
        logger.info("Purged analytics data for owner %s: %s", owner_id, counts)
        return counts

    # ── Reads ───────────────────────────────────────────────────────────

    async def has_analytics(self, owner_id: str) -> bool:
        async with self._session_factory() as session:
            found = (
                await session.execute(
                    select(ChannelAnalytics.id).where(ChannelAnalytics.owner_id == owner_id).limit(1)
                )
            ).first()
        return found is not None

    async def latest_channel_snapshot(self, owner_id: str) -> Optional[Dict[str, object]]:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(ChannelAnalytics)
                    .where(ChannelAnalytics.owner_id == owner_id)
                    .order_by(ChannelAnalytics.date.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
        if row is None:
            return None
        return {
            "date": row.date.isoformat(),
            "followers_count": row.followers_count,
            "total_views": row.total_views,
            "subscriber_count": row.subscriber_count,
            "video_count": row.video_count,
        }

    async def count_rows(self, owner_id: str) -> Dict[str, int]:
        """Rows held for *owner_id* in each snapshot table and the cache."""
        counts: Dict[str, int] = {}
        async with self._session_factory() as session:
            for model in (*SNAPSHOT_MODELS, CacheEntry):
                counts[model.__tablename__] = (
                    await session.execute(
                        select(func.count()).select_from(model).where(model.owner_id == owner_id)
                    )
                ).scalar_one()
        return counts
