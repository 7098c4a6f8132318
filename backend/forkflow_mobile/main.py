"""
ForkFlow Mobile - field services API
Offline-first interaction capture for food-service sales reps: validation,
queued sync, GPS, attachment uploads and performance telemetry.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import interactions, location, metrics, sync
from .core.config import settings
from .core.telemetry_middleware import TelemetryMiddleware
from .services.container import MobileServices, build_services

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(services: Optional[MobileServices] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or build_services(settings)
        app.state.services.start()
        logger.info("%s %s started", settings.APP_NAME, settings.VERSION)
        try:
            yield
        finally:
            await app.state.services.stop()

    app = FastAPI(
        title="ForkFlow Mobile Field Services API",
        description=(
            "Offline-first interaction tracking for field sales reps. "
            "Validates and queues interactions, syncs them to the CRM record store, "
            "and reports GPS, upload and API performance."
        ),
        version=settings.VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(TelemetryMiddleware)

    app.include_router(interactions.router, prefix="/api/v1")
    app.include_router(sync.router, prefix="/api/v1")
    app.include_router(location.router, prefix="/api/v1")
    app.include_router(metrics.router, prefix="/api/v1")

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "service": settings.APP_NAME, "version": settings.VERSION}

    return app


app = create_app()
