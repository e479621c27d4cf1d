from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatjobs.api.schemas import ErrorBody
from chatjobs.logging import get_logger
from chatjobs.service.errors import RateLimitedError, ServiceError
from chatjobs.storage.errors import BackendError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
    502: "upstream_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Create the ``{"error": ..., "code": ...}`` body used by every failure."""
    body = ErrorBody(error=message, code=code or _error_code_for_status(status_code))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def rate_limit_headers(exc: RateLimitedError) -> dict:
    headers = {"Retry-After": str(exc.retry_after)}
    if exc.limit is not None:
        headers["X-RateLimit-Limit"] = str(exc.limit)
        headers["X-RateLimit-Remaining"] = str(max(0, exc.remaining))
        headers["X-RateLimit-Reset"] = str(exc.reset_seconds)
    return headers


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for service and storage errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        headers = rate_limit_headers(exc) if isinstance(exc, RateLimitedError) else None
        return _error_response(exc.status_code, exc.message, exc.error_code, headers)

    @app.exception_handler(BackendError)
    async def handle_backend_error(request: Request, exc: BackendError):
        # Raised inside durable steps; a 500 makes the queue redeliver
        logger.error(
            "backend_error",
            path=request.url.path,
            method=request.method,
            status=exc.status,
            retryable=exc.retryable,
            message=exc.message,
        )
        return _error_response(500, "document store request failed", "server_error")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning("request_validation_error", path=request.url.path, errors=exc.errors())
        return _error_response(400, "invalid request", "validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error")
