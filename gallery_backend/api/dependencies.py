"""Request-scoped access to the services created at startup."""

from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Header, Request

from gallery_backend.config import get_settings
from gallery_backend.core.exceptions import ActivationAuthError
from gallery_backend.core.logging import get_logger
from gallery_backend.core.middleware import get_client_ip
from gallery_backend.services.entitlements import EntitlementService
from gallery_backend.services.registrar import DownloadRegistrar

logger = get_logger(__name__)


def get_registrar(request: Request) -> DownloadRegistrar:
    return request.app.state.registrar


def get_entitlement_service(request: Request) -> EntitlementService:
    return request.app.state.entitlement_service


def get_network_address(request: Request) -> str:
    client_ip, _ = get_client_ip(request)
    return client_ip


async def require_activation_key(
    request: Request,
    x_activation_key: Optional[str] = Header(default=None),
) -> None:
    """Only the payment integration may create grants.

    Raises:
        ActivationAuthError: the key is missing, wrong, or not configured.
    """
    expected = get_settings().activation_api_key
    if not expected:
        logger.error(
            "Activation refused: ACTIVATION_API_KEY is not configured",
            data={"path": request.url.path},
        )
        raise ActivationAuthError("Activation is not enabled")

    if not x_activation_key or not secrets.compare_digest(
        x_activation_key.encode("utf-8"), expected.encode("utf-8")
    ):
        client_ip, _ = get_client_ip(request)
        logger.warning(
            "Activation refused: bad activation key",
            data={"client_ip": client_ip, "key_present": bool(x_activation_key)},
        )
        raise ActivationAuthError()
