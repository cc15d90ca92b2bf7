"""Quota, entitlement and registrar services."""

from gallery_backend.services.entitlements import EntitlementService
from gallery_backend.services.quota import QuotaService
from gallery_backend.services.registrar import DownloadRegistrar
from gallery_backend.services.sweeper import EvictionSweeper

__all__ = [
    "DownloadRegistrar",
    "EntitlementService",
    "EvictionSweeper",
    "QuotaService",
]
