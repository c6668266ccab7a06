"""
Async SQLAlchemy engine and session factory.

Production runs on PostgreSQL (``postgresql+asyncpg``); the test-suite
points the same models at SQLite through ``sqlite+aiosqlite``.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from database.models import Base


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


async def init_models(bind: AsyncEngine) -> None:
    """Create all tables that do not exist yet (development / tests)."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
