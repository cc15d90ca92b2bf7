"""
Health check endpoints.

Provides a liveness check for monitoring.
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request

from gallery_backend import __version__
from gallery_backend.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/api/health")
@router.get("/healthz")
async def healthcheck(request: Request) -> dict[str, Any]:
    """Return basic service health and sweeper state."""
    settings = get_settings()
    sweeper = getattr(request.app.state, "sweeper", None)
    last_sweep = sweeper.last_stats if sweeper is not None else None

    return {
        "status": "ok",
        "version": __version__,
        "timestamp": datetime.now(UTC).isoformat(),
        "environment": settings.environment,
        "store_backend": settings.store_backend,
        "sweeper_running": bool(sweeper and sweeper.running),
        "last_sweep_completed_at": last_sweep.completed_at if last_sweep else None,
    }
