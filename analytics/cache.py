"""
AnalyticsCache — short-lived, owner-scoped results kept in ``cache_entries``.

A row is served only while ``now < expires_at``; expired rows read as a
miss and are deleted on the way out.  Invalidation takes exact keys or
glob patterns (``*`` / ``?``), which are turned into escaped SQL ``LIKE``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.helpers import as_utc, glob_to_like, is_glob, upsert, utcnow
from database.models import CacheEntry

logger = logging.getLogger(__name__)

# ── TTLs per cache family ──────────────────────────────────────────────

CONNECTION_STATUS_TTL = timedelta(minutes=2)
DASHBOARD_OVERVIEW_TTL = timedelta(minutes=3)
ENHANCED_ANALYTICS_TTL = timedelta(minutes=5)
CHART_DATA_TTL = timedelta(minutes=10)
GROWTH_ANALYSIS_TTL = timedelta(minutes=30)

# Keys touched by a (re)connect, disconnect or account switch.
CONNECTION_KEY_PATTERNS = ["connection_status*", "overview*"]
# Keys derived from collected snapshots.
ANALYTICS_KEY_PATTERNS = ["overview*", "enhanced*", "chartdata*", "growth*", "performance*"]


def cache_key(family: str, *params: Any) -> str:
    """``cache_key("chartdata", "followers", 30)`` -> ``"chartdata:followers:30"``."""
    return ":".join([family, *(str(p) for p in params)])


class AnalyticsCache:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def get(self, owner_id: str, key: str) -> Optional[Any]:
        """Return the cached payload, or None on a miss or an expired row."""
        now = self._clock()
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(CacheEntry).where(
                        CacheEntry.owner_id == owner_id,
                        CacheEntry.cache_key == key,
                    )
                )
            ).scalar_one_or_none()
            if row is None:
                return None
            if now < as_utc(row.expires_at):
                return row.payload

            await session.execute(
                delete(CacheEntry).where(
                    CacheEntry.owner_id == owner_id,
                    CacheEntry.cache_key == key,
                    CacheEntry.expires_at <= now,
                )
            )
            await session.commit()
            logger.debug("Cache entry %s for owner %s expired", key, owner_id)
            return None

    async def set(self, owner_id: str, key: str, payload: Any, ttl: timedelta) -> None:
        now = self._clock()
        async with self._session_factory() as session:
            stmt = upsert(session, CacheEntry).values(
                owner_id=owner_id,
                cache_key=key,
                payload=payload,
                expires_at=now + ttl,
                created_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[CacheEntry.owner_id, CacheEntry.cache_key],
                set_={
                    "payload": stmt.excluded.payload,
                    "expires_at": stmt.excluded.expires_at,
                    "created_at": stmt.excluded.created_at,
                },
            )
            await session.execute(stmt)
            await session.commit()

    async def get_or_set(
        self,
        owner_id: str,
        key: str,
        ttl: timedelta,
        compute: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Read-through: serve the cached payload or compute, store and return it."""
        cached = await self.get(owner_id, key)
        if cached is not None:
            return cached
        payload = await compute()
        await self.set(owner_id, key, payload, ttl)
        return payload

    async def invalidate_pattern(self, owner_id: str, patterns: Iterable[str]) -> int:
        """
        Delete the owner's entries matching any of *patterns*.

        A pattern without ``*`` or ``?`` is an exact key.  Returns the number
        of rows removed.
        """
        clauses = []
        for pattern in patterns:
            if is_glob(pattern):
                clauses.append(CacheEntry.cache_key.like(glob_to_like(pattern), escape="\\"))
            else:
                clauses.append(CacheEntry.cache_key == pattern)
        if not clauses:
            return 0

        async with self._session_factory() as session:
            result = await session.execute(
                delete(CacheEntry).where(and_(CacheEntry.owner_id == owner_id, or_(*clauses)))
            )
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.debug("Invalidated %d cache entries for owner %s", removed, owner_id)
        return removed

    async def invalidate_owner(self, owner_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(CacheEntry).where(CacheEntry.owner_id == owner_id))
            await session.commit()
        return result.rowcount or 0

    async def sweep_expired(self) -> int:
        """Delete every expired entry across all owners."""
        async with self._session_factory() as session:
            result = await session.execute(delete(CacheEntry).where(CacheEntry.expires_at <= self._clock()))
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("Swept %d expired cache entries", removed)
        return removed

    async def stats(self) -> Dict[str, Any]:
        now = self._clock()
        async with self._session_factory() as session:
            total = (await session.execute(select(func.count()).select_from(CacheEntry))).scalar_one()
            expired = (
                await session.execute(
                    select(func.count()).select_from(CacheEntry).where(CacheEntry.expires_at <= now)
                )
            ).scalar_one()
            keys = (await session.execute(select(CacheEntry.cache_key))).scalars().all()

        families: Dict[str, int] = {}
        for key in keys:
            family = key.split(":", 1)[0]
            families[family] = families.get(family, 0) + 1
        return {
            "total_entries": total,
            "active_entries": total - expired,
            "expired_entries": expired,
            "families": families,
        }
