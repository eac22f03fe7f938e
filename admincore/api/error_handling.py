from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from admincore.api.schemas import Envelope, ErrorBody
from admincore.logging import get_correlation_id, get_logger, sanitize_error_message
from admincore.service.errors import ServiceError
from admincore.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# stable error codes for bare HTTP statuses
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Render the error envelope; ``request_id`` follows the correlation id."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    correlation_id = get_correlation_id()
    if correlation_id:
        envelope.request_id = correlation_id
    headers = None
    if status_code == 401:
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(envelope.model_dump()),
        headers=headers,
    )


def _log_failure(request: Request, status_code: int, event: str, **fields) -> None:
    """4xx are client mistakes and log at warning; 5xx log at error."""
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        **fields,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render service, storage, validation and HTTP errors in the envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request,
            exc.status_code,
            "service_error",
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        # raised past the service layer's own uniqueness checks, e.g. a concurrent insert
        _log_failure(request, 409, "constraint_violation", message=exc.message, detail=exc.detail)
        return _error_response(
            409, sanitize_error_message(exc.message), exc.detail, code="conflict"
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {
                "loc": list(err.get("loc", ())),
                "msg": err.get("msg"),
                "type": err.get("type"),
            }
            for err in exc.errors()
        ]
        _log_failure(request, 400, "request_validation_error", errors=errors)
        return _error_response(400, "request validation failed", errors, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        _log_failure(request, exc.status_code, "http_error", message=message)
        return _error_response(exc.status_code, message, details)

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
