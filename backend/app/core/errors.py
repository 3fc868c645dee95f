"""
Domain errors and the handlers that turn them into JSON responses.

Every error leaves the API in the same envelope:
    {"status": "error", "message": ..., "code"?: ..., "data"?: ...}
Route handlers raise AppError subclasses; only unexpected exceptions reach
the last-resort handler, which logs the traceback and returns a generic 500.
"""

import logging
import traceback
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import settings

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    message: str = "Internal Server Error"
    code: Optional[str] = None

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        data: Optional[dict] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message or self.message
        self.code = code or self.code
        self.data = data
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"status": "error", "message": self.message}
        if self.code:
            body["code"] = self.code
        if self.data is not None:
            body["data"] = self.data
        return body


class ValidationFailed(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Validation failed"


class ConflictError(AppError):
    # Duplicate email/username is reported as 400 for client compatibility
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Duplicate field value entered"


class AuthenticationError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Not authorized"


class ForbiddenError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    message = "Forbidden"


class EmailNotVerifiedError(ForbiddenError):
    code = "EMAIL_NOT_VERIFIED"

    def __init__(self, email: str, message: Optional[str] = None):
        super().__init__(
            message or "Email not verified. Please verify your email before accessing this resource.",
            data={"email": email, "needsVerification": True},
        )


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    message = "Resource not found"


class RateLimitError(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    message = "Too many requests"

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None,
                 retry_after: Optional[int] = None):
        data = {"retryAfter": retry_after} if retry_after is not None else None
        super().__init__(message, code=code, data=data)
        self.retry_after = retry_after


class UpstreamError(AppError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    message = "Service temporarily unavailable"


# Store error kinds -> public HTTP semantics.
# Keeps driver-specific codes (SQLSTATE, SQLite messages) out of the API contract.
STORE_ERROR_TRANSLATIONS = {
    "unique_violation": (status.HTTP_400_BAD_REQUEST, "Duplicate field value entered"),
    "foreign_key_violation": (status.HTTP_400_BAD_REQUEST, "Referenced record does not exist"),
    "check_violation": (status.HTTP_400_BAD_REQUEST, "Invalid data provided"),
    "not_null_violation": (status.HTTP_400_BAD_REQUEST, "Required field is missing"),
}

_PG_CODES = {
    "23505": "unique_violation",
    "23503": "foreign_key_violation",
    "23514": "check_violation",
    "23502": "not_null_violation",
}

_SQLITE_MARKERS = {
    "UNIQUE constraint failed": "unique_violation",
    "FOREIGN KEY constraint failed": "foreign_key_violation",
    "CHECK constraint failed": "check_violation",
    "NOT NULL constraint failed": "not_null_violation",
}


def store_error_kind(exc: IntegrityError) -> Optional[str]:
    """Classify an IntegrityError independent of the database driver"""
    pgcode = getattr(exc.orig, "pgcode", None)
    if pgcode in _PG_CODES:
        return _PG_CODES[pgcode]
    text = str(exc.orig)
    for marker, kind in _SQLITE_MARKERS.items():
        if marker in text:
            return kind
    return None


def translate_store_error(exc: IntegrityError) -> AppError:
    kind = store_error_kind(exc)
    status_code, message = STORE_ERROR_TRANSLATIONS.get(
        kind, (status.HTTP_400_BAD_REQUEST, "Invalid data provided"))
    return AppError(message, status_code=status_code)


def _validation_errors(exc: RequestValidationError) -> list[dict]:
    errors = []
    for err in exc.errors():
        # loc looks like ("body", "email") or ("query", "isVegetarian")
        field = ".".join(str(part) for part in err.get("loc", ())[1:]) or None
        errors.append({"field": field, "message": err.get("msg")})
    return errors


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"status": "error", "message": "Validation failed", "errors": _validation_errors(exc)},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "error", "message": message},
        headers=getattr(exc, "headers", None),
    )


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("Store constraint violation on %s %s: %s", request.method, request.url.path, exc.orig)
    return await app_error_handler(request, translate_store_error(exc))


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("API rate limit exceeded for %s on %s %s", request.client.host if request.client else "unknown",
                   request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"status": "error", "message": "Too many requests from this IP, please try again later."},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {
        "status": "error",
        "message": "Internal Server Error",
        "path": request.url.path,
        "method": request.method,
    }
    # Stack traces only leave the server in development
    if settings.is_development():
        content["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
