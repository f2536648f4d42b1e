"""
FastAPI application factory for portal-livesync.

This module creates the app with:
- CORS configuration for the portal frontend
- Backend lifecycle management (one backend per process)
- Live view routes
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .._version import __version__
from ..config import SyncConfig
from ..feed.base import create_backend
from ..kinds import KindRegistry, portal_kinds
from .routes import router
from .settings import Settings


def create_app(
    config: SyncConfig | None = None,
    registry: KindRegistry | None = None,
    backend: Any | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Loaded configuration (from env if not provided)
        registry: Kind registry (portal tables if not provided)
        backend: Pre-built backend; built from config in the lifespan otherwise
    """
    settings = Settings()
    registry = registry if registry is not None else portal_kinds()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage backend lifecycle."""
        sync_config = config or SyncConfig.from_env()
        if backend is not None:
            app.state.backend = backend
            await backend.connect()
        else:
            app.state.backend = await create_backend(sync_config, registry)
        app.state.config = sync_config
        app.state.registry = registry
        app.state.settings = settings

        yield

        await app.state.backend.close()

    app = FastAPI(
        title="Portal LiveSync",
        description="Live, tenant-scoped views over the client portal's tables.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": "portal-livesync"}

    return app
