"""
Error taxonomy and response envelope.

Handlers raise these exceptions the same way they would raise a plain
HTTPException; the handlers registered by ``register_exception_handlers``
render every failure as ``{"success": false, "error": {...}}``.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ApiError(HTTPException):
    """HTTPException carrying a machine-readable error code."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[List[str]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = code or self.default_code
        self.message = message or self.default_message
        self.details = details
        super().__init__(status_code=self.status_code, detail=self.message, headers=headers)


class Unauthenticated(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = "UNAUTHORIZED"
    default_message = "Authentication required"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message, code, headers={"WWW-Authenticate": "Bearer"})


class Forbidden(ApiError):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "FORBIDDEN"
    default_message = "Insufficient permissions"


class NotFound(ApiError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "NOT_FOUND"
    default_message = "Resource not found"


class ValidationFailed(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class Conflict(ApiError):
    # Duplicate identities are reported as a 400, like other client input errors
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "CONFLICT"
    default_message = "Resource already exists"


def success(data: Any, **extra: Any) -> Dict[str, Any]:
    """Wrap a payload in the success envelope."""
    body = {"success": True, "data": jsonable_encoder(data)}
    body.update(extra)
    return body


def error_body(message: str, code: str, details: Optional[List[str]] = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"message": message, "code": code}
    if details:
        error["details"] = details
    return {"success": False, "error": error}


def _format_validation_error(err: Dict[str, Any]) -> str:
    location = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
    field = ".".join(location)
    return f"{field}: {err.get('msg')}" if field else str(err.get("msg"))


_STATUS_CODES = {
    status.HTTP_400_BAD_REQUEST: "BAD_REQUEST",
    status.HTTP_401_UNAUTHORIZED: "UNAUTHORIZED",
    status.HTTP_403_FORBIDDEN: "FORBIDDEN",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
}


def register_exception_handlers(app: FastAPI) -> None:
    """Install the envelope-rendering exception handlers on the app."""

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.message, exc.code, exc.details),
            headers=exc.headers,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        code = _STATUS_CODES.get(exc.status_code, "HTTP_ERROR")
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(str(exc.detail), code),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [_format_validation_error(err) for err in exc.errors()]
        logger.info(f"Request validation failed on {request.url.path}: {details}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_body("Validation failed", "VALIDATION_ERROR", details),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("Internal server error", "INTERNAL_ERROR"),
        )
