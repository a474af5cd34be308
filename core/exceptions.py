# core/exceptions.py
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ========================================
# ❗ Error taxonomy
# ========================================
class AppError(Exception):
    """Base error; subclasses decide the HTTP status the caller sees."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.headers = headers
        if status_code is not None:
            self.status_code = status_code


class InputValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class UnsupportedMediaTypeError(InputValidationError):
    status_code = status.HTTP_415_UNSUPPORTED_MEDIA_TYPE


class AuthError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(AuthError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND


class StateConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT


class RateLimitExceededError(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, remaining: int, retry_after: int):
        super().__init__(
            "Too many requests. Please try again later.",
            headers={
                "X-RateLimit-Remaining": str(remaining),
                "Retry-After": str(retry_after),
            },
        )


class ConfigurationError(AppError):
    """A required setting is missing; callers only see a generic message."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    public_message = "Service is not configured."


class UpstreamError(AppError):
    """An external system (Stripe, Airtable, SendGrid) failed or timed out."""

    status_code = status.HTTP_502_BAD_GATEWAY


# ========================================
# 🧯 Handlers
# ========================================
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if isinstance(exc, ConfigurationError):
        logger.error(f"❌ Configuration error on {request.url.path}: {exc.message}")
    elif isinstance(exc, UpstreamError):
        logger.error(f"❌ Upstream failure on {request.url.path}: {exc.message}")

    body: Dict[str, Any] = {"success": False, "error": exc.public_message or exc.message}
    body.update(exc.details)
    return JSONResponse(status_code=exc.status_code, content=body, headers=exc.headers)


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed JSON and schema violations are plain 400s naming the offending fields."""
    errors = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        errors.append({"field": location or "body", "message": error.get("msg", "Invalid value")})

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": "Invalid request.", "errors": errors},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
