"""API routers."""

from gallery_backend.api.downloads import router as downloads_router
from gallery_backend.api.entitlements import router as entitlements_router
from gallery_backend.api.health import router as health_router

__all__ = [
    "downloads_router",
    "entitlements_router",
    "health_router",
]
