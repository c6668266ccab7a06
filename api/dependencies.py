"""
FastAPI dependencies (shared across routes).
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from connectors.base import BaseConnector
from core.container import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    """The container built at startup and attached to ``app.state``."""
    return request.app.state.services


def get_connector(
    provider: str,
    services: ServiceContainer = Depends(get_services),
) -> BaseConnector:
    """Resolve the ``{provider}`` path segment to the connector the vault serves."""
    connector = services.registry.get(provider)
    if connector is None or connector is not services.vault.connector:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Provider '{provider}' not found or not configured",
        )
    return connector
