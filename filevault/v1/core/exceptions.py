"""
API error types and the JSON error envelope.

Every error response has the same shape: an HTTP status plus a stable,
machine-readable ``code`` (``NOT_FOUND``, ``JOB_CREATION_FAILED``, ...) so
operators and clients can branch on the failure without parsing messages.
Job queue errors raised while serving a request are mapped here as well.
"""

import uuid
from datetime import UTC, datetime
from http import HTTPStatus
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from filevault.config.logging import add_request_context, get_logger
from filevault.v1.infra.jobs.errors import JobError

logger = get_logger(__name__)

# Job errors that reach the API; anything unlisted is a server error
JOB_ERROR_STATUS_CODES = {
    "JOB_CREATION_FAILED": status.HTTP_503_SERVICE_UNAVAILABLE,
    "NO_HANDLER": status.HTTP_501_NOT_IMPLEMENTED,
}

RETRY_AFTER_SECONDS = 1


class FileVaultException(Exception):
    """Base exception for errors the API reports to clients."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_error_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        error_code: str | None = None,
    ):
        self.message = message
        self.details = details or {}
        self.error_code = error_code or self.default_error_code
        super().__init__(self.message)


class ValidationError(FileVaultException):
    """Request is well formed but not acceptable (bad priority, unknown job type)."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_error_code = "VALIDATION_ERROR"


class NotFoundError(FileVaultException):
    """Referenced file or job does not exist."""

    status_code = status.HTTP_404_NOT_FOUND
    default_error_code = "NOT_FOUND"


def create_error_response(
    status_code: int,
    message: str,
    error_code: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "code": error_code or _status_error_code(status_code),
            "status": status_code,
            "message": message,
            "details": details or {},
        },
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    """Create standardized success response envelope."""
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def _status_error_code(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).name
    except ValueError:
        return "HTTP_ERROR"


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    error_code: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    exc_info: bool = False,
) -> JSONResponse:
    request_id = _request_id(request)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Request failed",
        status_code=status_code,
        error_code=error_code,
        message=message,
        details=details,
        request_id=request_id,
        exc_info=exc_info,
    )
    return JSONResponse(
        status_code=status_code,
        content=create_error_response(
            status_code, message, error_code, details, request_id
        ),
        headers=headers,
    )


async def filevault_exception_handler(
    request: Request, exc: FileVaultException
) -> JSONResponse:
    return _error_response(
        request, exc.status_code, exc.message, exc.error_code, exc.details
    )


async def job_error_handler(request: Request, exc: JobError) -> JSONResponse:
    """Report job queue failures with their own error code."""
    status_code = JOB_ERROR_STATUS_CODES.get(
        exc.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    headers = None
    if status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
        headers = {"Retry-After": str(RETRY_AFTER_SECONDS)}
    return _error_response(
        request, status_code, exc.message, exc.error_code, exc.details, headers
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Request validation failed",
        ValidationError.default_error_code,
        {"errors": jsonable_encoder(exc.errors())},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(
        request,
        exc.status_code,
        str(exc.detail),
        _status_error_code(exc.status_code),
        headers=getattr(exc, "headers", None),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions without leaking internals to the client."""
    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        FileVaultException.default_error_code,
        exc_info=True,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the envelope handlers on an application."""
    app.add_exception_handler(FileVaultException, filevault_exception_handler)
    app.add_exception_handler(JobError, job_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a correlation ID to the request's logs and echoes it back."""

    async def dispatch(self, request: Request, call_next):
        # Honour an upstream correlation ID when present
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        add_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        return response
