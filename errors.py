"""Typed application errors and their HTTP mapping."""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorType(str, Enum):
    VALIDATION = "VALIDATION_ERROR"
    AUTHENTICATION = "AUTHENTICATION_ERROR"
    AUTHORIZATION = "AUTHORIZATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INTERNAL = "INTERNAL_ERROR"


class ApiError(Exception):
    """Base exception for all storefront errors.

    Operational errors carry a message that is safe to show to the caller.
    Internal errors are logged and replaced by a generic message.
    """

    def __init__(
        self,
        error_type: ErrorType,
        message: str,
        status_code: int,
        is_operational: bool = True,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.type = error_type
        self.message = message
        self.status_code = status_code
        self.is_operational = is_operational
        self.details = details
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        body = {
            "type": self.type.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.is_operational and self.details:
            body["details"] = self.details
        return body


class ValidationError(ApiError):
    """Bad input or a business-rule violation."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(ErrorType.VALIDATION, message, 400, True, details)


class AuthenticationError(ApiError):
    def __init__(self, message: str = "Authentication failed"):
        super().__init__(ErrorType.AUTHENTICATION, message, 401, True)


class AuthorizationError(ApiError):
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(ErrorType.AUTHORIZATION, message, 403, True)


class NotFoundError(ApiError):
    """Missing entity, or one the caller is not allowed to see."""

    def __init__(self, resource: str = "Resource"):
        super().__init__(ErrorType.NOT_FOUND, f"{resource} not found", 404, True)


class ConflictError(ApiError):
    def __init__(self, message: str):
        super().__init__(ErrorType.CONFLICT, message, 409, True)


class InternalError(ApiError):
    def __init__(self, message: str = "Internal server error", details: Optional[Any] = None):
        super().__init__(ErrorType.INTERNAL, message, 500, False, details)


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    """Map ApiError subclasses to JSON responses."""
    if not exc.is_operational:
        logger.error("Internal error", exc_info=exc, extra={
            "path": request.url.path,
            "error": exc.message,
            "details": exc.details,
        })
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "type": exc.type.value,
                "message": "An internal error occurred",
                "timestamp": exc.timestamp.isoformat(),
            },
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unexpected error", exc_info=exc, extra={"path": request.url.path})
    return JSONResponse(
        status_code=500,
        content={
            "type": ErrorType.INTERNAL.value,
            "message": "An unexpected error occurred",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
