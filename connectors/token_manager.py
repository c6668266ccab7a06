"""
Credential vault — store / load / delete the per-owner OAuth credential.

Exactly one ``stored_credentials`` row exists per owner, and an external
account is linked to at most one owner.  Both tokens are encrypted with
AES-256-GCM before they reach the database.

Relinking an owner to a different external account (an *account switch*)
or disconnecting hands an owner purge to the background task runner; the
caller returns without waiting for it.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.base import BaseConnector
from connectors.encryption import TokenCipher
from connectors.errors import CredentialNotFound, EncryptionError
from connectors.token_refresher import DEFAULT_LEEWAY, TokenRefresher
from core.background import BackgroundTaskRunner
from database.helpers import as_utc, upsert, utcnow
from database.models import StoredCredential
from utils.schemas import OAuthToken

logger = logging.getLogger(__name__)

OwnerPurge = Callable[[str], Awaitable[Any]]


class CredentialVault:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: TokenCipher,
        connector: BaseConnector,
        tasks: BackgroundTaskRunner,
        *,
        purge_owner: Optional[OwnerPurge] = None,
        refresh_leeway: timedelta = DEFAULT_LEEWAY,
        refresh_timeout: float = 30.0,
    ):
        self._session_factory = session_factory
        self._cipher = cipher
        self._tasks = tasks
        self._purge_owner = purge_owner
        self.connector = connector
        self.refresher = TokenRefresher(
            self, connector, leeway=refresh_leeway, timeout=refresh_timeout,
        )

    # ── Write path ──────────────────────────────────────────────────────

    async def store_tokens(
        self,
        owner_id: str,
        external_account_id: str,
        token: OAuthToken,
    ) -> bool:
        """
        Encrypt and upsert the owner's credential.

        Returns True when this replaced a credential for a *different*
        external account (an account switch).
        """
        if not external_account_id:
            raise ValueError("external_account_id is required")

        try:
            encrypted_access = self._cipher.encrypt(token.access_token)
            encrypted_refresh = self._cipher.encrypt(token.refresh_token or "")
        except EncryptionError:
            logger.error("Failed to encrypt tokens for owner %s", owner_id)
            raise

        now = utcnow()
        async with self._session_factory() as session:
            try:
                current = (
                    await session.execute(
                        select(StoredCredential.external_account_id).where(
                            StoredCredential.owner_id == owner_id
                        )
                    )
                ).scalar_one_or_none()
                is_switch = current is not None and current != external_account_id
                if is_switch:
                    logger.info(
                        "Account switch detected for owner %s: %s -> %s",
                        owner_id, current, external_account_id,
                    )

                # The external account may still be linked to another owner.
                displaced = (
                    await session.execute(
                        select(StoredCredential.owner_id).where(
                            StoredCredential.external_account_id == external_account_id,
                            StoredCredential.owner_id != owner_id,
                        )
                    )
                ).scalars().all()
                if displaced:
                    await session.execute(
                        delete(StoredCredential).where(
                            StoredCredential.external_account_id == external_account_id,
                            StoredCredential.owner_id != owner_id,
                        )
                    )
                    logger.warning(
                        "External account %s reassigned from owner(s) %s to %s",
                        external_account_id, ", ".join(displaced), owner_id,
                    )

                stmt = upsert(session, StoredCredential).values(
                    owner_id=owner_id,
                    external_account_id=external_account_id,
                    encrypted_access_token=encrypted_access,
                    encrypted_refresh_token=encrypted_refresh,
                    scopes=list(token.scopes),
                    expires_at=token.expiry,
                    created_at=now,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[StoredCredential.owner_id],
                    set_={
                        "external_account_id": stmt.excluded.external_account_id,
                        "encrypted_access_token": stmt.excluded.encrypted_access_token,
                        "encrypted_refresh_token": stmt.excluded.encrypted_refresh_token,
                        "scopes": stmt.excluded.scopes,
                        "expires_at": stmt.excluded.expires_at,
                        "updated_at": now,
                    },
                )
                await session.execute(stmt)
                await session.commit()
            except SQLAlchemyError as exc:
                logger.error("Failed to store tokens for owner %s: %s", owner_id, exc)
                await session.rollback()
                raise

        if is_switch:
            self._schedule_purge(owner_id, "account-switch")
            logger.info(
                "Account switch completed: stored new credential for owner %s (external id %s)",
                owner_id, external_account_id,
            )
        else:
            logger.info("Stored credential for owner %s (external id %s)", owner_id, external_account_id)
        return is_switch

    async def update_refreshed_tokens(
        self,
        owner_id: str,
        external_account_id: str,
        token: OAuthToken,
    ) -> bool:
        """
        Write a refreshed token pair back, but only while the owner is still
        linked to *external_account_id*.

        Returns False (and writes nothing) if the owner was relinked or
        disconnected in the meantime.
        """
        try:
            encrypted_access = self._cipher.encrypt(token.access_token)
            encrypted_refresh = self._cipher.encrypt(token.refresh_token or "")
        except EncryptionError:
            logger.error("Failed to encrypt refreshed tokens for owner %s", owner_id)
            raise

        async with self._session_factory() as session:
            result = await session.execute(
                update(StoredCredential)
                .where(
                    StoredCredential.owner_id == owner_id,
                    StoredCredential.external_account_id == external_account_id,
                )
                .values(
                    encrypted_access_token=encrypted_access,
                    encrypted_refresh_token=encrypted_refresh,
                    scopes=list(token.scopes),
                    expires_at=token.expiry,
                    updated_at=utcnow(),
                )
            )
            await session.commit()
        return bool(result.rowcount)

    async def delete_stored_tokens(
        self,
        owner_id: str,
        *,
        purge: bool = True,
        external_account_id: Optional[str] = None,
    ) -> bool:
        """
        Hard-delete the owner's credential (disconnect).

        With ``purge`` the owner's analytics and cache rows are cleared in
        the background as well.  With ``external_account_id`` the row is
        only deleted while it still belongs to that account.  Returns True
        if a row was deleted.
        """
        stmt = delete(StoredCredential).where(StoredCredential.owner_id == owner_id)
        if external_account_id is not None:
            stmt = stmt.where(StoredCredential.external_account_id == external_account_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        deleted = bool(result.rowcount)
        if deleted:
            logger.info("Deleted stored credential for owner %s", owner_id)
        if purge:
            self._schedule_purge(owner_id, "disconnect")
        return deleted

    def _schedule_purge(self, owner_id: str, reason: str) -> None:
        if self._purge_owner is None:
            return
        logger.info("Clearing analytics data for owner %s (%s)", owner_id, reason)
        self._tasks.submit(f"purge-{reason}:{owner_id}", self._purge_owner(owner_id))

    # ── Read path ───────────────────────────────────────────────────────

    async def _load(self, owner_id: str) -> StoredCredential:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(StoredCredential).where(StoredCredential.owner_id == owner_id)
                )
            ).scalar_one_or_none()
        if row is None:
            raise CredentialNotFound(owner_id)
        return row

    async def get_stored_credential(self, owner_id: str) -> Tuple[str, OAuthToken]:
        """The linked external account id and its decrypted token, read from one row."""
        row = await self._load(owner_id)
        try:
            access_token = self._cipher.decrypt(row.encrypted_access_token)
            refresh_token = self._cipher.decrypt(row.encrypted_refresh_token)
        except EncryptionError as exc:
            logger.error("Failed to decrypt stored credential for owner %s: %s", owner_id, exc)
            raise
        token = OAuthToken(
            access_token=access_token,
            refresh_token=refresh_token,
            expiry=as_utc(row.expires_at),
            scopes=list(row.scopes or []),
        )
        return row.external_account_id, token

    async def get_stored_tokens(self, owner_id: str) -> OAuthToken:
        _, token = await self.get_stored_credential(owner_id)
        return token

    async def get_valid_credential(self, owner_id: str) -> Tuple[str, OAuthToken]:
        """External account id plus a currently-valid token for that same account."""
        return await self.refresher.get_valid_credential(owner_id)

    async def get_valid_token(self, owner_id: str) -> OAuthToken:
        """Stored token if still fresh, otherwise a refreshed one."""
        _, token = await self.refresher.get_valid_credential(owner_id)
        return token

    async def get_external_account_id(self, owner_id: str) -> str:
        async with self._session_factory() as session:
            external_id = (
                await session.execute(
                    select(StoredCredential.external_account_id).where(
                        StoredCredential.owner_id == owner_id
                    )
                )
            ).scalar_one_or_none()
        if external_id is None:
            raise CredentialNotFound(owner_id)
        return external_id

    async def has_credential(self, owner_id: str) -> bool:
        try:
            await self.get_external_account_id(owner_id)
        except CredentialNotFound:
            return False
        return True

    async def list_owner_ids(self) -> List[str]:
        """Every owner currently holding a stored credential."""
        async with self._session_factory() as session:
            rows = await session.execute(
                select(StoredCredential.owner_id).order_by(StoredCredential.owner_id)
            )
            return list(rows.scalars().all())
