"""
SQLAlchemy ORM models.

Every table is partitioned by ``owner_id`` (the application-level identity
of a creator); there are no cross-owner relationships.  Column types are
kept portable so the same models run on PostgreSQL and SQLite.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class StoredCredential(Base):
    __tablename__ = "stored_credentials"

    owner_id = Column(String(255), primary_key=True)
    external_account_id = Column(String(255), unique=True, nullable=False)
    encrypted_access_token = Column(Text, nullable=False)
    encrypted_refresh_token = Column(Text, nullable=False)
    scopes = Column(JSON, nullable=False, default=list)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_stored_credentials_expires_at", "expires_at"),
    )


class CacheEntry(Base):
    __tablename__ = "cache_entries"

    owner_id = Column(String(255), primary_key=True)
    cache_key = Column(String(255), primary_key=True)
    payload = Column(JSON, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_cache_entries_expires_at", "expires_at"),
    )


class CollectionJob(Base):
    __tablename__ = "collection_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(255), nullable=False)
    job_type = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    data_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_collection_jobs_owner_type", "owner_id", "job_type", "created_at"),
        Index("idx_collection_jobs_status", "status"),
    )


# ── Analytics snapshot family ──────────────────────────────────────────


class ChannelAnalytics(Base):
    __tablename__ = "channel_analytics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(255), nullable=False)
    date = Column(Date, nullable=False)
    followers_count = Column(Integer, nullable=False, default=0)
    total_views = Column(Integer, nullable=False, default=0)
    subscriber_count = Column(Integer, nullable=False, default=0)
    video_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", "date", name="uq_channel_analytics_owner_date"),
    )


class VideoAnalytics(Base):
    __tablename__ = "video_analytics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(255), nullable=False)
    video_id = Column(String(255), nullable=False)
    title = Column(Text)
    video_type = Column(String(50))  # 'archive', 'highlight', 'upload'
    duration_seconds = Column(Integer, nullable=False, default=0)
    view_count = Column(Integer, nullable=False, default=0)
    thumbnail_url = Column(Text)
    published_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", "video_id", name="uq_video_analytics_owner_video"),
        Index("idx_video_analytics_owner_published", "owner_id", "published_at"),
    )


class StreamSession(Base):
    __tablename__ = "stream_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(255), nullable=False)
    stream_id = Column(String(255), nullable=False)
    title = Column(Text)
    game_name = Column(String(255))
    started_at = Column(DateTime(timezone=True))
    ended_at = Column(DateTime(timezone=True))
    duration_minutes = Column(Integer, nullable=False, default=0)
    peak_viewers = Column(Integer, nullable=False, default=0)
    average_viewers = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", "stream_id", name="uq_stream_sessions_owner_stream"),
    )


SNAPSHOT_MODELS = (ChannelAnalytics, VideoAnalytics, StreamSession)
