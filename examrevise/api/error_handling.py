from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from examrevise.api.schemas import Envelope
from examrevise.logging import get_logger
from examrevise.service.errors import ServiceError
from examrevise.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes mapped from HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "not_found",
    409: "conflict",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """Build the failure envelope ``{success: false, error, code, ...extra}``."""
    envelope = Envelope.failure(
        message, code or _error_code_for_status(status_code), **(extra or {})
    )
    return JSONResponse(status_code=status_code, content=envelope.to_body())


def _validation_message(errors: List[Dict[str, Any]]) -> str:
    """Turn the first pydantic error into a client-facing sentence."""
    if not errors:
        return "Invalid request"
    first = errors[0]
    loc = [str(part) for part in first.get("loc", ()) if part != "body"]
    field = loc[-1] if loc else "request"
    if first.get("type") == "missing":
        return f"{field} is required"
    message = str(first.get("msg", "Invalid request"))
    prefix = "Value error, "
    if message.startswith(prefix):
        message = message[len(prefix):]
    return message


def _error_details(errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
            "message": str(err.get("msg", "")),
        }
        for err in errors
    ]


def register_exception_handlers(app: FastAPI) -> None:
    """Install the single boundary that maps typed errors to the envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            error_type=type(exc).__name__,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, exc.error_code, exc.extra)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, "conflict")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = list(exc.errors())
        message = _validation_message(errors)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            message=message,
            error_count=len(errors),
        )
        return _error_response(
            400, message, "validation_error", {"details": _error_details(errors)}
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code in (404, 405):
            logger.info(
                "endpoint_not_found", path=request.url.path, method=request.method
            )
            return _error_response(404, "Endpoint not found", "not_found")
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

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
        return _error_response(500, "internal server error", "server_error")
