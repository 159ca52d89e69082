# app/middleware/error_handler.py
# Error envelope for the session API.
# Every failure leaves the service as {"error": {"code", "message", "details"?, "request_id"?}};
# the sync client reads error.message from it.

import logging
import traceback
import uuid
from typing import Callable, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from app.utils.logger import log_exception

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class AppError(Exception):
    """Base error carrying the HTTP status and machine-readable code."""

    status_code = 500
    error_code = "INTERNAL_ERROR"
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None, details: Optional[dict] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(AppError):
    """Malformed body, missing field or a state value of the wrong type."""
    status_code = 400
    error_code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class UnauthorizedError(AppError):
    status_code = 401
    error_code = "UNAUTHORIZED"
    default_message = "Unauthorized"


class NotFoundError(AppError):
    """Unknown session, or a session the caller may not touch."""
    status_code = 404
    error_code = "NOT_FOUND"
    default_message = "Resource not found"


class ConflictError(AppError):
    """State merge kept losing the version check."""
    status_code = 409
    error_code = "CONFLICT"
    default_message = "Conflicting concurrent update"


class DatabaseError(AppError):
    status_code = 503
    error_code = "DATABASE_ERROR"
    default_message = "Database operation failed"


def _request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    return rid or request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex


def create_error_response(
    error_code: str,
    message: str,
    status_code: int,
    details: Optional[dict] = None,
    request_id: Optional[str] = None,
) -> JSONResponse:
    body = {"code": error_code, "message": message}
    if details:
        body["details"] = details
    if request_id:
        body["request_id"] = request_id
    headers = {REQUEST_ID_HEADER: request_id} if request_id else None
    return JSONResponse(status_code=status_code, content={"error": body}, headers=headers)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Outermost safety net: tags the request with an id and turns anything
    that escaped the exception handlers into a 500 envelope.
    """

    def __init__(self, app, debug: bool = False):
        super().__init__(app)
        self.debug = debug

    async def dispatch(self, request: Request, call_next: Callable):
        request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        try:
            response = await call_next(request)
        except Exception as e:
            details = None
            if self.debug:
                details = {"type": type(e).__name__, "traceback": traceback.format_exc()}
            log_exception(e, context=f"{request.method} {request.url.path}")
            logger.error(
                f"Unhandled {type(e).__name__} on {request.url.path}: {e}",
                extra={"request_id": request.state.request_id},
                exc_info=True,
            )
            return create_error_response(
                error_code=AppError.error_code,
                message="An internal error occurred. Please try again later.",
                status_code=500,
                details=details,
                request_id=request.state.request_id,
            )
        response.headers.setdefault(REQUEST_ID_HEADER, request.state.request_id)
        return response


def setup_exception_handlers(app):
    """Render AppError, HTTP errors and request validation failures as one envelope."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            log_exception(exc, context=f"{exc.error_code} on {request.url.path}")
        else:
            logger.info(f"{exc.error_code} on {request.url.path}: {exc.message}")
        return create_error_response(
            error_code=exc.error_code,
            message=exc.message,
            status_code=exc.status_code,
            details=exc.details,
            request_id=_request_id(request),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return create_error_response(
            error_code="HTTP_ERROR",
            message=str(exc.detail),
            status_code=exc.status_code,
            request_id=_request_id(request),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        # Path/query parsing failures are client errors like any other bad input
        return create_error_response(
            error_code=ValidationError.error_code,
            message="Invalid request",
            status_code=ValidationError.status_code,
            details={"errors": [e.get("msg", "") for e in exc.errors()]},
            request_id=_request_id(request),
        )
