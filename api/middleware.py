"""
Global middleware and exception handlers.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from connectors.errors import (
    CredentialNotFound,
    EncryptionError,
    ReauthRequired,
    SessionExpiredOrInvalid,
    UpstreamError,
)

logger = logging.getLogger(__name__)


def register_middleware(app: FastAPI) -> None:
    """Attach any app-level middleware."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.debug("%s %s — %.3fs", request.method, request.url.path, elapsed)
        return response


def _banner(status_code: int, error: str, *, connect: bool = False, reconnect: bool = False) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "connect_required": connect,
            "reconnect_required": reconnect,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Translate connector-layer errors into HTTP responses."""

    @app.exception_handler(CredentialNotFound)
    async def credential_not_found(request: Request, exc: CredentialNotFound):
        return _banner(status.HTTP_400_BAD_REQUEST, "Account not connected", connect=True)

    @app.exception_handler(ReauthRequired)
    async def reauth_required(request: Request, exc: ReauthRequired):
        logger.info("Re-authentication required for owner %s", exc.owner_id)
        return _banner(status.HTTP_401_UNAUTHORIZED, "Connection expired, please reconnect", reconnect=True)

    @app.exception_handler(SessionExpiredOrInvalid)
    async def session_invalid(request: Request, exc: SessionExpiredOrInvalid):
        return _banner(status.HTTP_400_BAD_REQUEST, "OAuth session expired or invalid")

    @app.exception_handler(UpstreamError)
    async def upstream_error(request: Request, exc: UpstreamError):
        logger.warning("Upstream failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"error": "Upstream service error", "status_code": exc.status_code},
        )

    @app.exception_handler(EncryptionError)
    async def encryption_error(request: Request, exc: EncryptionError):
        logger.error("Encryption failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )
