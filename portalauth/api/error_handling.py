from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from portalauth.api.schemas import ErrorEnvelope
from portalauth.logging import get_logger, sanitize_error_message
from portalauth.service.errors import ServiceError
from portalauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "validation_error",
    503: "unavailable",
}

_STATUS_TITLES = {
    400: "Bad request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not found",
    405: "Method not allowed",
    409: "Conflict",
    422: "Validation failed",
    503: "Service unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    request: Request,
    status_code: int,
    title: str,
    error: str,
    *,
    code: Optional[str] = None,
    details: Any = None,
) -> JSONResponse:
    envelope = ErrorEnvelope(
        status_code=status_code,
        path=request.url.path,
        message=title,
        error=error,
        code=code or _error_code_for_status(status_code),
        details=details,
    )
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(envelope.model_dump(by_alias=True, exclude_none=True)),
    )


def _request_context(request: Request) -> dict[str, Any]:
    return {
        "method": request.method,
        "path": request.url.path,
        "client_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers that turn every failure into the error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            **_request_context(request),
        )
        return _error_response(
            request,
            exc.status_code,
            exc.title,
            exc.message,
            code=exc.error_code,
            details=exc.detail or None,
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            message=exc.message,
            detail=exc.detail,
            **_request_context(request),
        )
        return _error_response(
            request, 409, "Conflict", exc.message, code="conflict", details=exc.detail or None
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                "message": err.get("msg", "invalid value"),
            }
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            error_code="validation_error",
            fields=[err["field"] for err in errors],
            **_request_context(request),
        )
        summary = "; ".join(
            f"{err['field']}: {err['message']}" if err["field"] else err["message"]
            for err in errors
        )
        return _error_response(
            request,
            422,
            "Validation failed",
            summary or "Request body is invalid",
            code="validation_error",
            details=errors,
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        code = _error_code_for_status(exc.status_code)
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                status_code=exc.status_code,
                error_code=code,
                **_request_context(request),
            )
        else:
            logger.warning(
                "http_client_error",
                status_code=exc.status_code,
                error_code=code,
                **_request_context(request),
            )
        return _error_response(
            request,
            exc.status_code,
            _STATUS_TITLES.get(exc.status_code, "Error"),
            message,
            code=code,
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
            **_request_context(request),
        )
        return _error_response(
            request,
            500,
            "Internal server error",
            "An unexpected error occurred",
            code="server_error",
        )
