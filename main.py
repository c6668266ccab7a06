"""
Creator account linking & analytics — application entry point.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_exception_handlers, register_middleware
from api.routes import router as api_router
from config.settings import config
from core.container import ServiceContainer, build_services

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "sqlalchemy.engine", "asyncio"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the FastAPI app.  Tests pass a prebuilt container; otherwise the
    services are built from ``config`` when the lifespan starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        container = services or build_services(config)
        app.state.services = container
        await container.startup()
        logger.info("Application ready to accept requests.")
        try:
            yield
        finally:
            await container.shutdown()

    app = FastAPI(
        title="Creator Account Linking & Analytics",
        version="1.0.0",
        description="Twitch account linking with background analytics collection.",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)
    register_exception_handlers(app)

    # Routes
    app.include_router(api_router)

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
