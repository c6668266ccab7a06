"""
Tests for the token refresher: refresh-on-expiry, write-back and the
terminal re-auth path.
"""

import asyncio
from datetime import timedelta

import pytest

from connectors.errors import CredentialNotFound, ReauthRequired, TokenExchangeError
from connectors.token_refresher import RefreshingTokenSource

from conftest import make_token


class TestRefreshingTokenSource:
    @pytest.mark.asyncio
    async def test_fresh_token_not_refreshed(self, connector):
        token = make_token(expires_in=timedelta(hours=1))
        source = RefreshingTokenSource(connector, token)
        assert await source.token() is token
        assert connector.refresh_calls == []

    @pytest.mark.asyncio
    async def test_token_inside_leeway_is_refreshed(self, connector):
        connector.refresh_result = make_token("a2", "r2")
        source = RefreshingTokenSource(
            connector, make_token("a1", "r1", expires_in=timedelta(seconds=60)),
        )
        fresh = await source.token()
        assert fresh.access_token == "a2"
        assert connector.refresh_calls == ["r1"]

    @pytest.mark.asyncio
    async def test_missing_refresh_token_keeps_old_one(self, connector):
        connector.refresh_result = make_token("a2", "", scopes=[])
        source = RefreshingTokenSource(
            connector, make_token("a1", "r1", expires_in=timedelta(seconds=-5), scopes=["x"]),
        )
        fresh = await source.token()
        assert fresh.refresh_token == "r1"
        assert fresh.scopes == ["x"]

    @pytest.mark.asyncio
    async def test_no_expiry_is_treated_as_valid(self, connector):
        source = RefreshingTokenSource(connector, make_token(expires_in=None))
        await source.token()
        assert connector.refresh_calls == []


class TestGetValidToken:
    @pytest.mark.asyncio
    async def test_returns_stored_token_when_fresh(self, vault, connector):
        await vault.store_tokens("owner-1", "ext-1", make_token("a1", "r1"))
        token = await vault.get_valid_token("owner-1")
        assert token.access_token == "a1"
        assert connector.refresh_calls == []

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_and_persisted(self, vault, connector, tasks):
        await vault.store_tokens(
            "owner-1", "ext-1", make_token("a1", "r1", expires_in=timedelta(minutes=-1)),
        )
        connector.refresh_result = make_token("a2", "r2", expires_in=timedelta(hours=4))

        token = await vault.get_valid_token("owner-1")

        assert token.access_token == "a2"
        stored = await vault.get_stored_tokens("owner-1")
        assert (stored.access_token, stored.refresh_token) == ("a2", "r2")
        assert await vault.get_external_account_id("owner-1") == "ext-1"
        assert tasks.submitted == 0

    @pytest.mark.asyncio
    async def test_concurrent_callers_refresh_once(self, vault, connector):
        await vault.store_tokens(
            "owner-1", "ext-1", make_token("a1", "r1", expires_in=timedelta(minutes=-1)),
        )
        connector.refresh_result = make_token("a2", "r2", expires_in=timedelta(hours=4))

        tokens = await asyncio.gather(*(vault.get_valid_token("owner-1") for _ in range(5)))

        assert {t.access_token for t in tokens} == {"a2"}
        assert connector.refresh_calls == ["r1"]

    @pytest.mark.asyncio
    async def test_refresh_failure_requires_reauth(self, vault, connector, repository, tasks):
        await vault.store_tokens(
            "owner-1", "ext-1", make_token("a1", "r1", expires_in=timedelta(minutes=-1)),
        )
        connector.refresh_error = TokenExchangeError("invalid refresh token", status_code=400)

        with pytest.raises(ReauthRequired) as excinfo:
            await vault.get_valid_token("owner-1")

        assert excinfo.value.owner_id == "owner-1"
        assert await vault.has_credential("owner-1") is False
        assert tasks.submitted == 0
        with pytest.raises(CredentialNotFound):
            await vault.get_valid_token("owner-1")

    @pytest.mark.asyncio
    async def test_refresh_timeout_requires_reauth(self, session_factory, cipher, connector, tasks):
        from connectors.token_manager import CredentialVault

        async def hang(refresh_token):
            await asyncio.sleep(10)

        connector.refresh_access_token = hang
        vault = CredentialVault(session_factory, cipher, connector, tasks, refresh_timeout=0.05)
        await vault.store_tokens(
            "owner-1", "ext-1", make_token(expires_in=timedelta(minutes=-1)),
        )

        with pytest.raises(ReauthRequired):
            await vault.get_valid_token("owner-1")
        assert await vault.has_credential("owner-1") is False

    @pytest.mark.asyncio
    async def test_unconnected_owner(self, vault):
        with pytest.raises(CredentialNotFound):
            await vault.get_valid_token("nobody")


class TestRefreshAcrossRelink:
    def _park_refresh(self, connector, result=None, error=None):
        entered, release = asyncio.Event(), asyncio.Event()

        async def parked(refresh_token):
            connector.refresh_calls.append(refresh_token)
            entered.set()
            await release.wait()
            if error is not None:
                raise error
            return result

        connector.refresh_access_token = parked
        return entered, release

    @pytest.mark.asyncio
    async def test_refreshed_pair_not_written_over_new_account(self, vault, connector):
        await vault.store_tokens(
            "owner-1", "ext-1", make_token("a-E1", "r-E1", expires_in=timedelta(minutes=-1)),
        )
        entered, release = self._park_refresh(
            connector, result=make_token("a-E1-refreshed", "r-E1-refreshed"),
        )

        pending = asyncio.create_task(vault.get_valid_credential("owner-1"))
        await entered.wait()
        assert await vault.store_tokens("owner-1", "ext-2", make_token("a-E2", "r-E2")) is True
        release.set()
        external_id, token = await pending

        assert (external_id, token.access_token) == ("ext-1", "a-E1-refreshed")
        stored = await vault.get_stored_tokens("owner-1")
        assert (stored.access_token, stored.refresh_token) == ("a-E2", "r-E2")
        assert await vault.get_external_account_id("owner-1") == "ext-2"

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_new_account(self, vault, connector):
        await vault.store_tokens(
            "owner-1", "ext-1", make_token("a-E1", "r-E1", expires_in=timedelta(minutes=-1)),
        )
        entered, release = self._park_refresh(
            connector, error=TokenExchangeError("invalid refresh token", status_code=400),
        )

        pending = asyncio.create_task(vault.get_valid_token("owner-1"))
        await entered.wait()
        await vault.store_tokens("owner-1", "ext-2", make_token("a-E2", "r-E2"))
        release.set()
        with pytest.raises(ReauthRequired):
            await pending

        assert await vault.get_external_account_id("owner-1") == "ext-2"
        assert (await vault.get_stored_tokens("owner-1")).access_token == "a-E2"


class TestOwnerLocks:
    @pytest.mark.asyncio
    async def test_lock_entries_dropped_after_use(self, vault, connector):
        for owner_id in ("owner-1", "owner-2"):
            await vault.store_tokens(
                owner_id, f"ext-{owner_id}", make_token(expires_in=timedelta(minutes=-1)),
            )
        connector.refresh_result = make_token("a2", "r2")

        await asyncio.gather(*(vault.get_valid_token(o) for o in ("owner-1", "owner-2", "owner-1")))

        assert vault.refresher._locks == {}
        assert vault.refresher._lock_users == {}

    @pytest.mark.asyncio
    async def test_lock_entry_dropped_after_failure(self, vault):
        with pytest.raises(CredentialNotFound):
            await vault.get_valid_token("nobody")
        assert vault.refresher._locks == {}
