"""
FastAPI dependencies for authentication.

Provides ``get_current_owner_id``, used across all protected routes.  The
token verifier is the one the service container chose at startup.
"""

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from api.dependencies import get_services
from auth.jwt import InvalidTokenError
from core.container import ServiceContainer

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer()


async def get_current_owner_id(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
    services: ServiceContainer = Depends(get_services),
) -> str:
    """
    Extract and verify the Bearer token, returning the authenticated
    owner id.
    """
    try:
        return services.verifier.verify(credentials.credentials)
    except InvalidTokenError as exc:
        logger.debug("Rejected identity token: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        )
