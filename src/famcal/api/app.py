"""famcal HTTP API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that builds the sync service from config (DB pool,
  shared HTTP client, notifier) and tears it down on shutdown
- Health endpoint at GET /api/health
- Event and calendar routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from famcal import __version__
from famcal.api.deps import ServiceResources, wire_service_dependencies
from famcal.api.middleware import register_error_handlers
from famcal.api.routers.calendars import router as calendars_router
from famcal.api.routers.events import router as events_router
from famcal.calendar.service import CalendarSyncService
from famcal.config import FamcalConfig

logger = logging.getLogger(__name__)


def create_app(
    service: CalendarSyncService | None = None,
    config: FamcalConfig | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    service:
        A ready sync service. When given, the lifespan handler does not
        touch the database (used by tests and embedding callers).
    config:
        Configuration used to build the service at startup when *service*
        is not given.
    cors_origins:
        Allowed CORS origins. Defaults to ``["http://localhost:5173"]``.
    """
    if cors_origins is None:
        cors_origins = ["http://localhost:5173"]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if service is not None or config is None:
            yield
            return

        resources = ServiceResources(config)
        built = await resources.start()
        wire_service_dependencies(app, built)
        try:
            yield
        finally:
            await resources.close()

    app = FastAPI(
        title="famcal API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(events_router)
    app.include_router(calendars_router)

    if service is not None:
        wire_service_dependencies(app, service)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
