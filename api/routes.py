"""
REST API routes — account linking, collection triggers and analytics
housekeeping.

The OAuth callback never answers with an error body: the browser is always
redirected back to the dashboard with either ``{provider}_connected=true``
or ``{provider}_error=<flag>``.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError

from analytics.cache import CONNECTION_KEY_PATTERNS, CONNECTION_STATUS_TTL, cache_key
from api.dependencies import get_connector, get_services
from auth.dependencies import get_current_owner_id
from connectors.base import BaseConnector
from connectors.errors import (
    CredentialNotFound,
    EncryptionError,
    SessionExpiredOrInvalid,
    UpstreamError,
)
from core.container import ServiceContainer
from database.helpers import utcnow
from utils.schemas import CollectionJobView, ConnectionStatus, InitiateResponse, ScopePermission

logger = logging.getLogger(__name__)

router = APIRouter()


def _dashboard_redirect(services: ServiceContainer, **params: str) -> RedirectResponse:
    base = services.settings.frontend_url.rstrip("/")
    return RedirectResponse(url=f"{base}/dashboard?{urlencode(params)}")


def _error_redirect(services: ServiceContainer, provider: str, flag: str) -> RedirectResponse:
    return _dashboard_redirect(services, **{f"{provider}_error": flag})


async def _invalidate_connection_keys(services: ServiceContainer, owner_id: str) -> None:
    try:
        await services.cache.invalidate_pattern(owner_id, CONNECTION_KEY_PATTERNS)
    except SQLAlchemyError:
        logger.exception("Could not invalidate connection cache for owner %s", owner_id)


# ── Account linking ────────────────────────────────────────────────────


@router.post("/auth/{provider}/initiate", response_model=InitiateResponse)
async def initiate_oauth(
    owner_id: str = Depends(get_current_owner_id),
    connector: BaseConnector = Depends(get_connector),
    services: ServiceContainer = Depends(get_services),
) -> InitiateResponse:
    """Start the OAuth flow: create a single-use state and return the consent URL."""
    state = services.sessions.create_session(owner_id)
    descriptions = connector.scope_descriptions
    permissions = [
        ScopePermission(scope=scope, description=descriptions.get(scope, scope))
        for scope in connector.scopes
    ]
    logger.info("OAuth initiated: owner=%s provider=%s", owner_id, connector.provider_name)
    return InitiateResponse(
        oauth_url=connector.get_auth_url(state),
        state=state,
        permissions=permissions,
        scope_count=len(permissions),
    )


@router.get("/auth/{provider}/callback")
async def oauth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    connector: BaseConnector = Depends(get_connector),
    services: ServiceContainer = Depends(get_services),
) -> RedirectResponse:
    """
    Provider redirect target.

    Consumes the state, exchanges the code, resolves the external account
    and stores the credential.  A relink to a different account purges the
    owner's old analytics in the background; the redirect does not wait.
    """
    provider = connector.provider_name

    if error:
        logger.warning("OAuth denied by user (%s): %s", error, error_description or "")
        return _error_redirect(services, provider, "oauth_denied")
    if not code or not state:
        logger.warning("OAuth callback missing code or state")
        return _error_redirect(services, provider, "invalid_callback")

    try:
        session = services.sessions.consume_session(state)
    except SessionExpiredOrInvalid:
        logger.warning("OAuth callback with unknown or expired state")
        return _error_redirect(services, provider, "csrf_failed")
    owner_id = session.owner_id

    try:
        token = await connector.exchange_code(code)
    except UpstreamError as exc:
        logger.error("Token exchange failed for owner %s: %s", owner_id, exc)
        return _error_redirect(services, provider, "token_exchange_failed")

    try:
        external_account_id = await connector.resolve_account_id(token.access_token)
    except UpstreamError as exc:
        logger.error("Could not resolve %s account for owner %s: %s", provider, owner_id, exc)
        return _error_redirect(services, provider, "user_info_failed")

    try:
        is_switch = await services.vault.store_tokens(owner_id, external_account_id, token)
    except (EncryptionError, SQLAlchemyError, ValueError) as exc:
        logger.error("Could not store credential for owner %s: %s", owner_id, exc)
        return _error_redirect(services, provider, "token_storage_failed")

    await _invalidate_connection_keys(services, owner_id)
    services.manager.trigger_owner_collection(owner_id)

    logger.info(
        "OAuth connected: owner=%s provider=%s account=%s switch=%s",
        owner_id, provider, external_account_id, is_switch,
    )
    params = {f"{provider}_connected": "true"}
    if is_switch:
        params["account_switched"] = "true"
    return _dashboard_redirect(services, **params)


@router.delete("/auth/{provider}/disconnect")
async def disconnect(
    owner_id: str = Depends(get_current_owner_id),
    connector: BaseConnector = Depends(get_connector),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Revoke (best effort) and delete the credential; the owner's analytics are purged in the background."""
    try:
        token = await services.vault.get_stored_tokens(owner_id)
    except CredentialNotFound:
        token = None
    except EncryptionError:
        logger.warning("Stored credential for owner %s unreadable; deleting without revoke", owner_id)
        token = None
    if token is not None and not await connector.revoke_token(token.access_token):
        logger.info("Provider revoke did not succeed for owner %s", owner_id)

    deleted = await services.vault.delete_stored_tokens(owner_id)
    await _invalidate_connection_keys(services, owner_id)
    return {"status": "disconnected", "provider": connector.provider_name, "was_connected": deleted}


@router.post("/auth/{provider}/collect", status_code=status.HTTP_202_ACCEPTED)
async def trigger_collection(
    owner_id: str = Depends(get_current_owner_id),
    connector: BaseConnector = Depends(get_connector),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Queue an on-demand collection for the caller."""
    if not await services.vault.has_credential(owner_id):
        raise CredentialNotFound(owner_id)
    if not services.manager.trigger_owner_collection(owner_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A collection for this account is already queued or running",
        )
    return {"status": "queued", "provider": connector.provider_name, "owner_id": owner_id}


@router.get("/auth/{provider}/connection-status", response_model=ConnectionStatus)
async def connection_status(
    owner_id: str = Depends(get_current_owner_id),
    connector: BaseConnector = Depends(get_connector),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    provider = connector.provider_name

    async def compute() -> Dict[str, Any]:
        try:
            external_account_id = await services.vault.get_external_account_id(owner_id)
        except CredentialNotFound:
            return ConnectionStatus(owner_id=owner_id, provider=provider, connected=False).model_dump()

        # ReauthRequired propagates to the reconnect banner.
        token = await services.vault.get_valid_token(owner_id)
        try:
            validation = await services.api.validate_token(token.access_token)
            token_valid: Optional[bool] = validation is not None
        except UpstreamError as exc:
            logger.warning("Token validation unavailable for owner %s: %s", owner_id, exc)
            token_valid = None
        return ConnectionStatus(
            owner_id=owner_id,
            provider=provider,
            connected=True,
            external_account_id=external_account_id,
            token_valid=token_valid,
            scopes=token.scopes,
        ).model_dump()

    return await services.cache.get_or_set(
        owner_id, cache_key("connection_status", provider), CONNECTION_STATUS_TTL, compute,
    )


# ── Analytics housekeeping ─────────────────────────────────────────────


@router.get("/analytics/jobs", response_model=List[CollectionJobView])
async def recent_jobs(
    limit: int = Query(10, ge=1, le=100),
    owner_id: str = Depends(get_current_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> List[CollectionJobView]:
    return await services.ledger.recent_jobs(owner_id, limit=limit)


@router.get("/analytics/jobs/summary")
async def job_summary(
    hours: int = Query(24, ge=1, le=24 * 30),
    owner_id: str = Depends(get_current_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """Job counts per status across all owners, for spotting systemic failures."""
    counts = await services.ledger.status_counts(since=utcnow() - timedelta(hours=hours))
    return {"hours": hours, "counts": counts, "manager": services.manager.status()}


@router.get("/analytics/cache-stats")
async def cache_stats(
    owner_id: str = Depends(get_current_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    return await services.cache.stats()


@router.get("/health")
async def health(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "providers": services.registry.list_providers(),
        "oauth_sessions": len(services.sessions),
        "background_tasks": services.tasks.stats(),
        "collection": services.manager.status(),
    }
