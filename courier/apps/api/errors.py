from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from courier.apps.api.response import error_response
from courier.core.errors import (
    CourierError,
    PayloadTooLargeError,
    QueueItemNotFoundError,
    QueueStateError,
    QueueValidationError,
    SenderConfigError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _status_for(exc: CourierError) -> tuple[int, str]:
    # Order matters: PayloadTooLargeError is also a QueueValidationError.
    if isinstance(exc, PayloadTooLargeError):
        return 413, "PAYLOAD_TOO_LARGE"
    if isinstance(exc, QueueValidationError):
        return 400, "QUEUE_VALIDATION_ERROR"
    if isinstance(exc, QueueItemNotFoundError):
        return 404, "NOT_FOUND"
    if isinstance(exc, QueueStateError):
        return 409, "QUEUE_STATE_CONFLICT"
    if isinstance(exc, SenderConfigError):
        return 503, "SENDER_MISCONFIGURED"
    return 500, "INTERNAL_ERROR"


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for admin tooling.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def courier_exception_handler(request: Request, exc: CourierError) -> JSONResponse:
    status_code, code = _status_for(exc)
    if status_code >= 500:
        logger.error("api_courier_error path=%s error=%s", request.url.path, exc)
    payload = error_response(request=request, code=code, message=str(exc) or code)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("api_unhandled_error path=%s", request.url.path)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
