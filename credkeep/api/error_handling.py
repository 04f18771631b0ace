from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from credkeep.api.schemas import Envelope, ErrorBody
from credkeep.logging import get_logger
from credkeep.service.errors import ServiceError
from credkeep.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# fallback codes for errors raised outside the ServiceError taxonomy
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    429: "rate_limited",
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
    """Render the error envelope; a ``retry_after`` detail also sets Retry-After."""
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details or None,
    )
    envelope = Envelope(status="error", error=error_body)
    headers = None
    if isinstance(details, dict) and details.get("retry_after"):
        headers = {"Retry-After": str(int(details["retry_after"]))}
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _log_failure(request: Request, status_code: int, event: str, **fields: Any) -> None:
    if status_code >= 500:
        log_fn = logger.error
    elif status_code in (401, 429):
        # details on a 401 or 429 mean a lockout or throttle
        log_fn = logger.warning if fields.get("details") else logger.info
    else:
        log_fn = logger.info
    log_fn(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def _validation_details(exc: RequestValidationError) -> list[dict]:
    # drop the raw input so passwords never echo back
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


def register_exception_handlers(app: FastAPI) -> None:
    """Map credential, storage, validation and unexpected errors onto the envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        details: Optional[dict] = exc.detail or None
        _log_failure(
            request, exc.status_code, "auth_request_failed", error_code=exc.error_code, details=details
        )
        return _error_response(exc.status_code, exc.message, details, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure(
            request, 409, "constraint_violation", violation=type(exc).__name__, detail=exc.detail
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        _log_failure(request, 400, "request_validation_failed", errors=len(details))
        return _error_response(400, "invalid request", details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        _log_failure(request, exc.status_code, "http_error")
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
