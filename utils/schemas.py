"""
Pydantic schemas for the account-linking and analytics system.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth tokens
# ═══════════════════════════════════════════════════════════════════════════════


class OAuthToken(BaseModel):
    """Decrypted access/refresh pair plus expiry, as held in memory."""

    access_token: str
    refresh_token: str = ""
    token_type: str = "bearer"
    expiry: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)

    def expires_within(self, leeway: timedelta, now: Optional[datetime] = None) -> bool:
        """True when the token is expired or will be within *leeway*."""
        if not self.access_token:
            return True
        if self.expiry is None:
            return False
        now = now or datetime.now(timezone.utc)
        expiry = self.expiry if self.expiry.tzinfo else self.expiry.replace(tzinfo=timezone.utc)
        return expiry <= now + leeway

    def same_secrets(self, other: "OAuthToken") -> bool:
        return (
            self.access_token == other.access_token
            and self.refresh_token == other.refresh_token
        )


class TokenResponse(BaseModel):
    """
    The provider's token endpoint payload (code exchange and refresh).

    Twitch returns ``scope`` as a list; some proxies flatten it to a
    space-separated string, which is the only alternative shape accepted.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1)
    refresh_token: str = ""
    expires_in: Optional[int] = Field(default=None, ge=0)
    scope: List[str] = Field(default_factory=list)
    token_type: str = "bearer"

    @field_validator("scope", mode="before")
    @classmethod
    def _split_scope(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return value.split()
        return value

    def to_token(self, now: Optional[datetime] = None) -> OAuthToken:
        now = now or datetime.now(timezone.utc)
        expiry = now + timedelta(seconds=self.expires_in) if self.expires_in else None
        return OAuthToken(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            token_type=self.token_type,
            expiry=expiry,
            scopes=self.scope,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Twitch Helix payloads
# ═══════════════════════════════════════════════════════════════════════════════


class TwitchUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    login: str = ""
    display_name: str = ""
    email: Optional[str] = None
    profile_image_url: str = ""
    view_count: int = 0


class ChannelInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    broadcaster_id: str
    broadcaster_name: str = ""
    game_name: str = ""
    game_id: str = ""
    title: str = ""
    broadcaster_language: str = ""


class VideoInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str = ""
    title: str = ""
    description: str = ""
    created_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    url: str = ""
    thumbnail_url: str = ""
    view_count: int = 0
    language: str = ""
    type: str = ""
    duration: str = ""


class TokenValidation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    client_id: str = ""
    login: str = ""
    user_id: str = ""
    scopes: List[str] = Field(default_factory=list)
    expires_in: int = 0


# ═══════════════════════════════════════════════════════════════════════════════
# Collection
# ═══════════════════════════════════════════════════════════════════════════════


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    DAILY_CHANNEL = "daily_channel"
    VIDEO_DATA = "video_data"
    FULL_COLLECTION = "full_collection"


class CollectionJobView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    job_type: str
    status: JobStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    data_date: Optional[date] = None
    created_at: Optional[datetime] = None


class ChannelSnapshot(BaseModel):
    owner_id: str
    followers_count: int = 0
    total_views: int = 0
    subscriber_count: int = 0
    video_count: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BatchSummary(BaseModel):
    owners: int = 0
    completed: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════════
# HTTP responses
# ═══════════════════════════════════════════════════════════════════════════════


class ScopePermission(BaseModel):
    scope: str
    description: str


class InitiateResponse(BaseModel):
    oauth_url: str
    state: str
    permissions: List[ScopePermission] = Field(default_factory=list)
    scope_count: int = 0


class ConnectionStatus(BaseModel):
    owner_id: str
    provider: str
    connected: bool
    external_account_id: Optional[str] = None
    token_valid: Optional[bool] = None
    scopes: List[str] = Field(default_factory=list)
