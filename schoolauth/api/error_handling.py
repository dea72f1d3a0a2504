from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from schoolauth.api.schemas import Envelope, ErrorBody
from schoolauth.logging import get_logger, sanitize_error_message
from schoolauth.service.errors import ServiceError
from schoolauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    423: "account_locked",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Build the JSON error envelope for ``status_code``."""
    body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(),
    )


def service_error_response(exc: ServiceError) -> JSONResponse:
    return error_response(
        exc.status_code, exc.message, exc.detail or None, code=exc.error_code
    )


def _log_rejection(request: Request, event: str, status_code: int, **fields: Any) -> None:
    # Client errors are expected traffic; only 5xx are errors
    log = logger.error if status_code >= 500 else logger.warning
    log(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain, storage and framework exceptions onto the error envelope."""

    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        _log_rejection(
            request,
            "request_rejected",
            exc.status_code,
            error_code=exc.error_code,
            reason=exc.message,
        )
        return service_error_response(exc)

    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_rejection(request, "constraint_violation", 409, detail=exc.detail)
        return error_response(409, exc.message, exc.detail or None, code="conflict")

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException):
        detail = exc.detail
        # Routes raise HTTPException with a prebuilt {"error": {...}} payload
        if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
            error = detail["error"]
            _log_rejection(
                request, "http_error", exc.status_code, error_code=error.get("code")
            )
            return error_response(
                exc.status_code,
                error.get("message", "http error"),
                error.get("details"),
                code=error.get("code"),
            )
        if exc.status_code >= 500:
            _log_rejection(request, "http_error", exc.status_code)
        return error_response(exc.status_code, str(detail))

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return error_response(500, "internal server error", code="server_error")
