from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field

from courier.core.clock import utc_now


API_VERSION = "v1"

T = TypeVar("T")


class PageMeta(BaseModel):
    # Paging window for queue listings; total is omitted where counting is too costly (search).
    limit: int
    offset: int = 0
    returned: int
    total: int | None = None
    has_more: bool


class ResponseMeta(BaseModel):
    # Server clock travels with every payload so operators can read next_retry_at and
    # updated_at against the same reference the workers use.
    request_id: str
    api_version: str = Field(default=API_VERSION)
    generated_at: str
    page: PageMeta | None = None


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # The request middleware assigns one; fall back for handlers invoked outside it.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    generated = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = generated
    return generated


def page_meta(*, limit: int, offset: int, returned: int, total: int | None = None) -> PageMeta:
    if total is not None:
        has_more = offset + returned < total
    else:
        # Without a count, a full page is the only hint that more rows match.
        has_more = returned >= limit
    return PageMeta(limit=limit, offset=offset, returned=returned, total=total, has_more=has_more)


def _meta(request: Request, page: PageMeta | None = None) -> dict[str, Any]:
    meta = ResponseMeta(
        request_id=get_request_id(request),
        generated_at=utc_now().isoformat(),
        page=page,
    )
    return meta.model_dump(exclude_none=True)


def success_response(*, request: Request, data: Any, page: PageMeta | None = None) -> dict[str, Any]:
    return {"data": data, "meta": _meta(request, page)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
