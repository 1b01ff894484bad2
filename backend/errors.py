"""
Application error hierarchy and the global exception handlers that render it.

Every failure that reaches a client is rendered in the uniform envelope:

    {"success": false, "error": {"code", "message", "details"?, "timestamp", "path"}}

Error classes:
- VALIDATION_ERROR (400)
- UNAUTHORIZED (401)
- NOT_FOUND (404)
- CONFLICT (409)
- DATABASE_ERROR (400)
- INTERNAL_SERVER_ERROR (500)

Tracebacks and driver messages are only placed in "details" outside
production-like environments.
"""

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

from config import is_production_like
from time_utils import iso_now

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors that carry a machine-readable code and HTTP status."""

    code = "INTERNAL_SERVER_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_reply(self) -> Dict[str, Any]:
        """Serialize for transport in a broker reply."""
        return {
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details,
        }

    @classmethod
    def from_reply(cls, reply: Dict[str, Any]) -> "AppError":
        """Rebuild the error raised on the far side of a broker request."""
        code = reply.get("code", AppError.code)
        error_cls = _ERRORS_BY_CODE.get(code, AppError)
        error = error_cls(reply.get("message", "Request failed"), reply.get("details"))
        error.code = code
        error.status_code = reply.get("status_code", error_cls.status_code)
        return error


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class UnauthorizedError(AppError):
    code = "UNAUTHORIZED"
    status_code = status.HTTP_401_UNAUTHORIZED


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(AppError):
    code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT


class DatabaseError(AppError):
    code = "DATABASE_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class InternalServerError(AppError):
    code = "INTERNAL_SERVER_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


_ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        ValidationError,
        UnauthorizedError,
        NotFoundError,
        ConflictError,
        DatabaseError,
        InternalServerError,
    )
}

# HTTPException status -> envelope code
_HTTP_STATUS_CODES = {
    status.HTTP_400_BAD_REQUEST: "VALIDATION_ERROR",
    status.HTTP_401_UNAUTHORIZED: "UNAUTHORIZED",
    status.HTTP_403_FORBIDDEN: "FORBIDDEN",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
    status.HTTP_409_CONFLICT: "CONFLICT",
}


def error_body(
    request: Request, code: str, message: str, details: Any = None
) -> Dict[str, Any]:
    """Build the error envelope for a request."""
    error: Dict[str, Any] = {
        "code": code,
        "message": message,
        "timestamp": iso_now(),
        "path": request.url.path,
    }
    if details is not None:
        error["details"] = details
    return {"success": False, "error": error}


def _debug_details(exc: Exception) -> Optional[str]:
    if is_production_like():
        return None
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def register_error_handlers(app: FastAPI) -> None:
    """Register all global error handlers on the FastAPI app."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(request, exc.code, exc.message, exc.details),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        code = _HTTP_STATUS_CODES.get(
            exc.status_code,
            "INTERNAL_SERVER_ERROR" if exc.status_code >= 500 else "HTTP_ERROR",
        )
        logger.info(f"HTTP {exc.status_code} on {request.method} {request.url.path}: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(request, code, str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        details = [
            {
                "field": ".".join(str(loc) for loc in e["loc"]),
                "message": e["msg"],
                "type": e["type"],
            }
            for e in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_body(request, "VALIDATION_ERROR", "Validation failed", details),
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"Database error on {request.url.path}: {exc}")
        details = None if is_production_like() else str(exc)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_body(request, "DATABASE_ERROR", "Database operation failed", details),
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        message = "Internal server error occurred" if is_production_like() else str(exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body(request, "INTERNAL_SERVER_ERROR", message, _debug_details(exc)),
        )
