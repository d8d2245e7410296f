"""FastAPI application for the reference status service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import Depends, FastAPI

from phonepool import __version__
from phonepool.config import ServiceConfig
from phonepool.service.auth import require_api_key
from phonepool.service.routes import router as phones_router
from phonepool.service.store import PhoneStore

logger = logging.getLogger("phonepool.service")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Log service startup and shutdown."""
    config: ServiceConfig = app.state.config
    store: PhoneStore = app.state.store
    logger.info(
        "Status service started on http://%s:%d with %d phones",
        config.host, config.port, len(store.list_phones()),
    )
    yield
    logger.info("Status service stopped")


def create_app(
    config: ServiceConfig | None = None,
    store: PhoneStore | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    if config is None:
        config = ServiceConfig()
    if store is None:
        store = PhoneStore.from_file(
            config.phones_file,
            admin_hostnames=config.admin_hostnames,
            request_expiry=config.request_expiry,
        )

    app = FastAPI(
        title="phonepool status service",
        version=__version__,
        description="Occupancy and waiting lists of the shared phone pool",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.store = store

    app.include_router(phones_router, dependencies=[Depends(require_api_key)])

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "version": __version__}

    return app
