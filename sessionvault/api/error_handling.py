from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from sessionvault.api.schemas import Envelope, ErrorBody
from sessionvault.logging import get_correlation_id, get_logger
from sessionvault.service.errors import ServiceError
from sessionvault.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

# Fallback codes when an exception carries none of its own
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
    503: "service_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    envelope = Envelope(status="error", error=body)
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _log_failure(request: Request, event: str, status_code: int, **fields: Any) -> None:
    """5xx at error level, everything else at warning."""
    log = logger.error if status_code >= 500 else logger.warning
    log(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        **fields,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map service, storage and framework exceptions onto the error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        # server-side failures stay opaque; the log line carries the detail
        details = None if exc.status_code >= 500 else (exc.detail or None)
        return _error_response(exc.status_code, exc.message, details, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure(
            request, "constraint_violation", 409, message=exc.message, detail=exc.detail
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        _log_failure(request, "store_unavailable", 503, message=exc.message)
        return _error_response(503, "service temporarily unavailable")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        _log_failure(request, "request_validation_failed", 400, error_count=len(errors))
        return _error_response(
            400,
            "request validation failed",
            jsonable_encoder(errors, exclude={"input"}),
            code="validation_error",
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # routes raise HTTPException with an envelope-shaped detail
        error = exc.detail.get("error") if isinstance(exc.detail, dict) else None
        if isinstance(error, dict):
            message = error.get("message", "http error")
            code = error.get("code")
            _log_failure(request, "http_error", exc.status_code, error_code=code, message=message)
            return _error_response(exc.status_code, message, error.get("details"), code=code)
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        _log_failure(request, "http_error", exc.status_code, message=message)
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
