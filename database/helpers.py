"""
Database helper functions shared by the repositories.

"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def upsert(session: AsyncSession, model: Any):
    """
    Return a dialect-specific ``INSERT`` for *model* that supports
    ``on_conflict_do_update`` / ``on_conflict_do_nothing``.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


def like_escape(text: str) -> str:
    """Escape SQL ``LIKE`` wildcards using ``\\`` as the escape character."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def glob_to_like(pattern: str) -> str:
    """Translate a shell-style glob (``*``, ``?``) to an escaped ``LIKE`` pattern."""
    return "".join(
        "%" if ch == "*" else "_" if ch == "?" else like_escape(ch)
        for ch in pattern
    )


def is_glob(pattern: str) -> bool:
    return "*" in pattern or "?" in pattern
