"""
Shared fixtures: a throwaway SQLite database per test and a scripted
OAuth connector that never touches the network.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from analytics.repository import AnalyticsRepository
from connectors.base import BaseConnector
from connectors.encryption import TokenCipher, generate_key
from connectors.token_manager import CredentialVault
from core.background import BackgroundTaskRunner
from database.session import build_engine, build_session_factory, init_models
from utils.schemas import OAuthToken


class FakeConnector(BaseConnector):
    """Connector whose responses are set by the test."""

    def __init__(self):
        self.account_id = "ext-1"
        self.exchange_result = make_token("access-new", "refresh-new")
        self.exchange_error: Optional[Exception] = None
        self.resolve_error: Optional[Exception] = None
        self.refresh_result: Optional[OAuthToken] = None
        self.refresh_error: Optional[Exception] = None
        self.refresh_calls: List[str] = []
        self.revoked: List[str] = []

    @property
    def provider_name(self) -> str:
        return "twitch"

    @property
    def display_name(self) -> str:
        return "Twitch"

    @property
    def scopes(self) -> List[str]:
        return ["user:read:email", "moderator:read:followers"]

    @property
    def scope_descriptions(self):
        return {"user:read:email": "Access your email address"}

    def get_auth_url(self, state: str) -> str:
        return f"https://id.example.test/oauth2/authorize?state={state}"

    async def exchange_code(self, code: str) -> OAuthToken:
        if self.exchange_error:
            raise self.exchange_error
        return self.exchange_result

    async def refresh_access_token(self, refresh_token: str) -> OAuthToken:
        self.refresh_calls.append(refresh_token)
        if self.refresh_error:
            raise self.refresh_error
        return self.refresh_result

    async def resolve_account_id(self, access_token: str) -> str:
        if self.resolve_error:
            raise self.resolve_error
        return self.account_id

    async def revoke_token(self, access_token: str) -> bool:
        self.revoked.append(access_token)
        return True


def make_token(
    access: str = "access-1",
    refresh: str = "refresh-1",
    expires_in: Optional[timedelta] = timedelta(hours=4),
    scopes: Optional[List[str]] = None,
) -> OAuthToken:
    expiry = datetime.now(timezone.utc) + expires_in if expires_in is not None else None
    return OAuthToken(
        access_token=access,
        refresh_token=refresh,
        expiry=expiry,
        scopes=scopes if scopes is not None else ["user:read:email"],
    )


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def encryption_key():
    return generate_key()


@pytest.fixture
def cipher(encryption_key):
    return TokenCipher(encryption_key)


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
async def tasks():
    runner = BackgroundTaskRunner("test")
    yield runner
    await runner.cancel_all()


@pytest.fixture
def repository(session_factory):
    return AnalyticsRepository(session_factory)


@pytest.fixture
def vault(session_factory, cipher, connector, tasks, repository):
    return CredentialVault(
        session_factory,
        cipher,
        connector,
        tasks,
        purge_owner=repository.purge_owner_data,
        refresh_timeout=5.0,
    )
