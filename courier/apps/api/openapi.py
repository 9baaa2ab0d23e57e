from __future__ import annotations

from typing import Any

from courier.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1", "generated_at": "2026-03-02T09:00:00+00:00"},
    }


def _error_response(description: str, *, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response("Bad request", code="QUEUE_VALIDATION_ERROR", message="Unknown queue kind"),
    401: _error_response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid token"),
    404: _error_response("Not found", code="NOT_FOUND", message="Queue item not found"),
    409: _error_response("Conflict", code="QUEUE_STATE_CONFLICT", message="Queue item already sent"),
    413: _error_response("Payload too large", code="PAYLOAD_TOO_LARGE", message="Payload exceeds limit"),
    422: _error_response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _error_response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}
