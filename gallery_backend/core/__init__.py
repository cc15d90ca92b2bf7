"""Core module with logging, middleware, and exception handling."""

from gallery_backend.core.exceptions import (
    ActivationAuthError,
    EntitlementExpiredError,
    GalleryError,
    InvalidRequestError,
    QuotaExceededError,
    StoreUnavailableError,
    error_response,
    setup_exception_handlers,
)
from gallery_backend.core.logging import get_logger, setup_logging
from gallery_backend.core.middleware import RequestContextMiddleware, get_client_ip

__all__ = [
    "get_logger",
    "setup_logging",
    "RequestContextMiddleware",
    "get_client_ip",
    "error_response",
    "setup_exception_handlers",
    "ActivationAuthError",
    "EntitlementExpiredError",
    "GalleryError",
    "InvalidRequestError",
    "QuotaExceededError",
    "StoreUnavailableError",
]
