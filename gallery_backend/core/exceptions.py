"""Exception taxonomy and FastAPI exception handlers.

Every error response shares one body:

    {"detail": <message>,
     "error": {"code": "E4030", "message": <message>, "request_id": <id>},
     <exception details merged at top level, e.g. "remainingDownloads": 0>}

The top-level ``detail`` keeps the shape FastAPI clients already read.
"""

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from gallery_backend.core.logging import get_logger, request_context

logger = get_logger(__name__)


class GalleryError(Exception):
    """Base exception for the gallery backend."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        code: str = "E5000",
        details: dict = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details or {}
        super().__init__(message)


class InvalidRequestError(GalleryError):
    """A required identity, payment or image field is missing or blank.

    Raised before any store access, so it never has side effects.
    """

    def __init__(self, message: str = "userId is required", field: str = "userId"):
        super().__init__(
            message,
            status_code=status.HTTP_400_BAD_REQUEST,
            code="E4000",
            details={"field": field},
        )
        self.field = field


class ActivationAuthError(GalleryError):
    """The caller of a payment-only operation did not present a valid key."""

    def __init__(self, message: str = "Invalid activation key"):
        super().__init__(
            message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="E4010",
        )


class QuotaExceededError(GalleryError):
    """Free downloads for the current epoch are exhausted."""

    def __init__(self, downloads_used: int, limit: int):
        super().__init__(
            "Download limit reached",
            status_code=status.HTTP_403_FORBIDDEN,
            code="E4030",
            details={
                "downloadsUsed": downloads_used,
                "remainingDownloads": 0,
                "limit": limit,
            },
        )
        self.downloads_used = downloads_used
        self.limit = limit


class EntitlementExpiredError(GalleryError):
    """A grant was found but its expiry has passed.

    Never reaches a client: the resolver treats it as "no entitlement".
    """

    def __init__(self, grant_id: str, expires_at):
        super().__init__(
            "Entitlement expired",
            status_code=status.HTTP_404_NOT_FOUND,
            code="E4040",
        )
        self.grant_id = grant_id
        self.expires_at = expires_at


class StoreUnavailableError(GalleryError):
    """The backing store timed out or could not be reached. Retryable."""

    def __init__(self, operation: str, reason: str = "Store unavailable"):
        super().__init__(
            reason,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="E5030",
            details={"retryable": True},
        )
        self.operation = operation


def error_response(
    status_code: int,
    code: str,
    message: str,
    *,
    details: Optional[dict[str, Any]] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    """Render an error in the shared body shape for the current request."""
    ctx = request_context.get()
    content: dict[str, Any] = {
        "detail": message,
        "error": {
            "code": code,
            "message": message,
            "request_id": ctx.get("request_id") if ctx else None,
        },
    }
    content.update(details or {})
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def setup_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers with FastAPI app."""

    @app.exception_handler(GalleryError)
    async def gallery_exception_handler(
        request: Request, exc: GalleryError
    ) -> JSONResponse:
        """Handle application exceptions."""
        if exc.status_code >= 500:
            logger.error(
                f"Gallery error: {exc.message}",
                data={"status_code": exc.status_code, "details": exc.details},
            )
        else:
            logger.info(
                f"Request rejected: {exc.message}",
                data={"status_code": exc.status_code, "details": exc.details},
            )
        headers = None
        if isinstance(exc, StoreUnavailableError):
            headers = {"Retry-After": "1"}
        elif isinstance(exc, ActivationAuthError):
            headers = {"WWW-Authenticate": "ApiKey"}
        return error_response(
            exc.status_code, exc.code, exc.message, details=exc.details, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Malformed request bodies are client errors (400), like a missing id."""
        errors = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
            for e in exc.errors()
        ]
        logger.warning("Validation error", data={"errors": errors})
        return error_response(
            status.HTTP_400_BAD_REQUEST, "E4000", "Validation error", details={"errors": errors}
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        # 404 -> E4040, 405 -> E4050
        return error_response(
            exc.status_code, f"E{exc.status_code}0", str(exc.detail), headers=exc.headers
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.error(
            f"Unhandled exception: {type(exc).__name__}: {exc}",
            exc_info=True,
        )
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "E5000", "Internal server error"
        )
