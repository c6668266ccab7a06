"""
Token refresher — hand out a currently-valid access token for an owner.

The stored token is wrapped in a refreshing token source that only goes to
the network when the token is at or near expiry.  When the provider hands
back a different pair, it is written back only while the owner is still
linked to the external account it was loaded with; a refresh never changes
which account is linked, and a pair refreshed across a relink is dropped.

A failed refresh is terminal: the credential is deleted and
``ReauthRequired`` is raised so the UI can show "reconnect" instead of a
generic error.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, AsyncIterator, Callable, Dict, Tuple

from sqlalchemy.exc import SQLAlchemyError

from connectors.base import BaseConnector
from connectors.errors import EncryptionError, ReauthRequired
from utils.schemas import OAuthToken

if TYPE_CHECKING:
    from connectors.token_manager import CredentialVault

logger = logging.getLogger(__name__)

DEFAULT_LEEWAY = timedelta(seconds=120)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefreshingTokenSource:
    """Returns the wrapped token, refreshing it first if it is due."""

    def __init__(
        self,
        connector: BaseConnector,
        token: OAuthToken,
        leeway: timedelta = DEFAULT_LEEWAY,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._connector = connector
        self._token = token
        self._leeway = leeway
        self._clock = clock

    async def token(self) -> OAuthToken:
        if not self._token.expires_within(self._leeway, self._clock()):
            return self._token

        fresh = await self._connector.refresh_access_token(self._token.refresh_token)
        carried = {}
        if not fresh.refresh_token:
            carried["refresh_token"] = self._token.refresh_token
        if not fresh.scopes:
            carried["scopes"] = list(self._token.scopes)
        if carried:
            fresh = fresh.model_copy(update=carried)
        self._token = fresh
        return fresh


class TokenRefresher:
    def __init__(
        self,
        vault: "CredentialVault",
        connector: BaseConnector,
        *,
        leeway: timedelta = DEFAULT_LEEWAY,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._vault = vault
        self._connector = connector
        self._leeway = leeway
        self._timeout = timeout
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    def token_source(self, token: OAuthToken) -> RefreshingTokenSource:
        return RefreshingTokenSource(self._connector, token, self._leeway, self._clock)

    @asynccontextmanager
    async def _owner_lock(self, owner_id: str) -> AsyncIterator[None]:
        """Per-owner lock; the entry is dropped once nobody holds or waits on it."""
        lock = self._locks.setdefault(owner_id, asyncio.Lock())
        self._lock_users[owner_id] = self._lock_users.get(owner_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[owner_id] -= 1
            if not self._lock_users[owner_id]:
                del self._lock_users[owner_id]
                del self._locks[owner_id]

    async def get_valid_token(self, owner_id: str) -> OAuthToken:
        _, token = await self.get_valid_credential(owner_id)
        return token

    async def get_valid_credential(self, owner_id: str) -> Tuple[str, OAuthToken]:
        """
        Return the linked external account id and a token for it that is
        valid right now.

        Raises ``CredentialNotFound`` if the owner never connected,
        ``EncryptionError`` if the stored row cannot be decrypted, and
        ``ReauthRequired`` if the refresh failed.
        """
        async with self._owner_lock(owner_id):
            external_account_id, stored = await self._vault.get_stored_credential(owner_id)
            source = self.token_source(stored)
            try:
                fresh = await asyncio.wait_for(source.token(), timeout=self._timeout)
            except Exception as exc:
                logger.warning("Failed to refresh token for owner %s: %s", owner_id, exc)
                try:
                    await self._vault.delete_stored_tokens(
                        owner_id, purge=False, external_account_id=external_account_id,
                    )
                except Exception:
                    logger.exception("Failed to delete invalid tokens for owner %s", owner_id)
                raise ReauthRequired(owner_id, str(exc) or type(exc).__name__) from exc

            if not fresh.same_secrets(stored):
                await self._persist(owner_id, external_account_id, fresh)
            return external_account_id, fresh

    async def _persist(self, owner_id: str, external_account_id: str, fresh: OAuthToken) -> None:
        try:
            updated = await self._vault.update_refreshed_tokens(owner_id, external_account_id, fresh)
        except EncryptionError:
            logger.error("Could not encrypt refreshed tokens for owner %s", owner_id)
            raise
        except SQLAlchemyError as exc:
            logger.warning("Failed to update refreshed tokens for owner %s: %s", owner_id, exc)
            return
        if updated:
            logger.info("Updated refreshed tokens for owner %s", owner_id)
        else:
            logger.warning(
                "Owner %s is no longer linked to %s; discarding refreshed tokens",
                owner_id, external_account_id,
            )
