"""
Service container — builds every long-lived component once and owns their
lifecycle.

``build_services`` wires the object graph from ``Settings``; ``startup`` /
``shutdown`` are called from the FastAPI lifespan.  Route handlers reach the
container through ``request.app.state.services``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from analytics.cache import AnalyticsCache
from analytics.collector import DataCollector
from analytics.job_ledger import JobLedger
from analytics.repository import AnalyticsRepository
from analytics.scheduler import BackgroundCollectionManager
from auth.verifier import TokenVerifier, build_token_verifier
from config.settings import Settings
from connectors.base import BaseConnector
from connectors.encryption import TokenCipher
from connectors.registry import ConnectorRegistry
from connectors.session_store import OAuthSessionStore
from connectors.token_manager import CredentialVault
from connectors.twitch import TwitchConnector
from connectors.twitch_api import TwitchAPIClient
from core.background import BackgroundTaskRunner
from database.session import build_engine, build_session_factory, init_models

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    tasks: BackgroundTaskRunner
    sessions: OAuthSessionStore
    registry: ConnectorRegistry
    api: TwitchAPIClient
    vault: CredentialVault
    cache: AnalyticsCache
    ledger: JobLedger
    repository: AnalyticsRepository
    collector: DataCollector
    manager: BackgroundCollectionManager
    verifier: TokenVerifier
    engine: Optional[AsyncEngine] = None
    owns_engine: bool = field(default=False)

    async def startup(self) -> None:
        if self.settings.auto_create_tables and self.engine is not None:
            await init_models(self.engine)
            logger.info("Database tables ensured")

        self.sessions.start_sweeper()
        if self.settings.enable_background_collection:
            self.manager.start()
        else:
            logger.info("Background collection disabled")
        logger.info("Services started (providers: %s)", ", ".join(self.registry.list_configured()) or "none")

    async def shutdown(self) -> None:
        await self.manager.stop()
        await self.sessions.stop_sweeper()

        grace = self.settings.shutdown_grace_seconds
        if not await self.tasks.drain(timeout=grace):
            logger.warning("Background tasks still running after %.1fs; cancelling", grace)
            await self.tasks.cancel_all()

        if self.owns_engine and self.engine is not None:
            await self.engine.dispose()
        logger.info("Services stopped (%s)", self.tasks.stats())


def build_services(
    settings: Settings,
    *,
    engine: Optional[AsyncEngine] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    connector: Optional[BaseConnector] = None,
    api: Optional[TwitchAPIClient] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ServiceContainer:
    """Wire the application's services from *settings*."""
    owns_engine = engine is None and session_factory is None
    if owns_engine:
        engine = build_engine(settings.database_url, echo=settings.debug)
    if session_factory is None:
        session_factory = build_session_factory(engine)

    timeout = settings.upstream_timeout_seconds
    api = api or TwitchAPIClient(settings.twitch_client_id, timeout=timeout, transport=transport)
    connector = connector or TwitchConnector(
        settings.twitch_client_id,
        settings.twitch_client_secret,
        settings.twitch_redirect_base,
        settings.scope_list,
        api=api,
        timeout=timeout,
        transport=transport,
    )
    registry = ConnectorRegistry([connector])

    tasks = BackgroundTaskRunner("purge")
    repository = AnalyticsRepository(session_factory)
    vault = CredentialVault(
        session_factory,
        TokenCipher(settings.token_encryption_key),
        connector,
        tasks,
        purge_owner=repository.purge_owner_data,
        refresh_leeway=timedelta(seconds=settings.token_refresh_leeway_seconds),
        refresh_timeout=timeout,
    )
    cache = AnalyticsCache(session_factory)
    ledger = JobLedger(session_factory)
    collector = DataCollector(vault, api, repository)
    manager = BackgroundCollectionManager(
        collector,
        ledger,
        cache,
        vault.list_owner_ids,
        batch_size=settings.collection_batch_size,
        max_workers=settings.collection_max_workers,
        jitter_seconds=settings.collection_jitter_seconds,
        batch_pause_seconds=settings.collection_batch_pause_seconds,
        daily_hour_utc=settings.daily_collection_hour_utc,
        owner_timeout_seconds=settings.collection_owner_timeout_seconds,
        shutdown_grace_seconds=settings.shutdown_grace_seconds,
    )
    sessions = OAuthSessionStore(
        ttl=timedelta(seconds=settings.oauth_session_ttl_seconds),
        sweep_interval=settings.oauth_session_sweep_seconds,
    )

    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        tasks=tasks,
        sessions=sessions,
        registry=registry,
        api=api,
        vault=vault,
        cache=cache,
        ledger=ledger,
        repository=repository,
        collector=collector,
        manager=manager,
        verifier=build_token_verifier(settings),
        engine=engine,
        owns_engine=owns_engine,
    )
