"""Entitlement activation and verification endpoints.

Activation is called by the payment integration once a provider has
confirmed the payment, authenticated by the X-Activation-Key header. It
never touches free-download quota records.
"""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends

from gallery_backend.api.dependencies import get_entitlement_service, require_activation_key
from gallery_backend.api.schemas import ActivationRequest, VerifyRequest, iso
from gallery_backend.services.entitlements import EntitlementService

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


@router.post("/activate", dependencies=[Depends(require_activation_key)])
async def activate_entitlement(
    body: ActivationRequest,
    service: EntitlementService = Depends(get_entitlement_service),
):
    validity = timedelta(days=body.validity_days) if body.validity_days is not None else None
    grant = await service.activate(
        body.user_id,
        body.device_id,
        body.payment_id,
        body.payment_method,
        features=body.features,
        validity=validity,
    )
    return {
        "activationCode": grant.activation_code,
        "issuedAt": iso(grant.issued_at),
        "expiresAt": iso(grant.expires_at),
        "features": grant.features,
    }


@router.post("/verify")
async def verify_entitlement(
    body: VerifyRequest,
    service: EntitlementService = Depends(get_entitlement_service),
):
    grant = await service.resolve(body.user_id, body.device_id, body.activation_code)
    if grant is None:
        return {"hasUnlimited": False}
    return {
        "hasUnlimited": True,
        "expiresAt": iso(grant.expires_at),
        "downloadsCount": grant.downloads_count,
        "features": grant.features,
    }
