"""
Gallery download backend.

FastAPI application exposing free-download quota tracking and
unlimited-access entitlements, with structured logging and error handling.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gallery_backend import __version__
from gallery_backend.api import downloads_router, entitlements_router, health_router
from gallery_backend.config import Settings, get_settings
from gallery_backend.core import (
    RequestContextMiddleware,
    get_logger,
    setup_exception_handlers,
    setup_logging,
)
from gallery_backend.services import (
    DownloadRegistrar,
    EntitlementService,
    EvictionSweeper,
    QuotaService,
)
from gallery_backend.store.factory import close_stores, get_stores_from_settings

logger = get_logger(__name__)


def build_services(app: FastAPI, settings: Settings) -> None:
    """Create stores and services on ``app.state`` unless already provided."""
    if not hasattr(app.state, "quota_store") or not hasattr(app.state, "entitlement_store"):
        quota_store, entitlement_store = get_stores_from_settings(settings)
        app.state.quota_store = quota_store
        app.state.entitlement_store = entitlement_store

    app.state.quota_service = QuotaService(
        app.state.quota_store,
        limit=settings.free_download_limit,
        timeout_s=settings.store_timeout_seconds,
    )
    app.state.entitlement_service = EntitlementService(
        app.state.entitlement_store,
        timeout_s=settings.store_timeout_seconds,
        default_validity=timedelta(days=settings.entitlement_validity_days),
        max_validity=timedelta(days=settings.max_entitlement_validity_days),
        default_features=settings.default_features_list,
    )
    app.state.registrar = DownloadRegistrar(
        app.state.quota_service,
        app.state.entitlement_service,
        warning_threshold=settings.quota_warning_threshold,
    )
    app.state.sweeper = EvictionSweeper(
        app.state.quota_store,
        app.state.entitlement_store,
        retention_days=settings.retention_days_by_dimension,
        interval_seconds=settings.sweeper_interval_seconds,
        timeout_s=settings.store_timeout_seconds,
        enabled=settings.sweeper_enabled,
    )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings = get_settings()

    # Startup
    setup_logging(
        level=settings.log_level,
        json_output=not settings.debug,
        log_file=settings.log_file or None,
    )
    logger.info(
        "Starting gallery backend",
        data={
            "host": settings.host,
            "port": settings.port,
            "store_backend": settings.store_backend,
            "free_download_limit": settings.free_download_limit,
        },
    )

    build_services(_app, settings)
    await _app.state.sweeper.start()

    yield

    # Shutdown
    logger.info("Shutting down gallery backend")
    await _app.state.sweeper.stop()
    await _app.state.entitlement_service.aclose()
    await close_stores(_app.state.quota_store, _app.state.entitlement_store)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Gallery Downloads",
        description="Free-download quota and unlimited-access entitlements for the photo gallery",
        version=__version__,
        lifespan=lifespan,
        docs_url=settings.docs_url,
        redoc_url=None,
        openapi_url=settings.openapi_url,
    )

    setup_exception_handlers(app)

    # Last added = first executed
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    app.include_router(health_router)
    app.include_router(downloads_router)
    app.include_router(entitlements_router)

    return app


# Create application instance
app = create_app()


def main() -> None:
    settings = get_settings()
    uvicorn.run("gallery_backend.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
