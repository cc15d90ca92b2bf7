"""Download allowance, registration and history endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from gallery_backend.api.dependencies import get_network_address, get_registrar
from gallery_backend.api.schemas import AllowanceRequest, DownloadRequest, event_to_json, iso
from gallery_backend.services.registrar import DownloadRegistrar

router = APIRouter(prefix="/api/downloads", tags=["downloads"])


@router.post("/check")
async def check_download_allowance(
    body: AllowanceRequest,
    registrar: DownloadRegistrar = Depends(get_registrar),
    network_address: str = Depends(get_network_address),
):
    """Advisory pre-flight check. Registration re-checks atomically."""
    result = await registrar.check_allowance(
        body.user_id,
        body.device_id,
        body.activation_code,
        network_address,
    )
    return {
        "canDownload": result.can_download,
        "remainingDownloads": result.remaining,
        "unlimitedAccess": result.unlimited,
        "downloadsUsed": result.downloads_used,
    }


@router.post("")
async def register_download(
    body: DownloadRequest,
    registrar: DownloadRegistrar = Depends(get_registrar),
    network_address: str = Depends(get_network_address),
):
    result = await registrar.register_download(
        body.user_id,
        body.device_id,
        network_address,
        body.image_src,
        image_title=body.image_title,
        user_agent=body.user_agent,
        activation_code=body.activation_code,
    )
    return {
        "success": result.success,
        "remainingDownloads": result.remaining,
        "downloadsUsed": result.downloads_used,
        "unlimitedAccess": result.unlimited,
        "warning": result.warning,
    }


@router.get("/history/{user_id}")
async def get_download_history(
    user_id: str,
    registrar: DownloadRegistrar = Depends(get_registrar),
):
    result = await registrar.get_history(user_id)
    return {
        "downloadsUsed": result.downloads_used,
        "remainingDownloads": result.remaining,
        "unlimitedAccess": result.unlimited,
        "expiresAt": iso(result.expires_at),
        "downloadHistory": [event_to_json(e) for e in result.history],
    }
