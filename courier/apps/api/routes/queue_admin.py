from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from courier.apps.api.deps import get_db, get_queue_dispatcher, require_admin
from courier.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from courier.apps.api.response import SuccessEnvelope, page_meta, success_response
from courier.domain.models import QueueItem
from courier.domain.queue import STATUS_PROCESSING
from courier.services.queue.cancel import MESSAGE_NOT_FOUND, cancel_item, cleanup_sent_items, delete_item
from courier.services.queue.dispatcher import DeliveryDispatcher
from courier.services.queue.store import get_item, get_queue_stats, item_payload, list_items, search_items

router = APIRouter(
    prefix="/admin/queue",
    tags=["queue-admin"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class CleanupRequest(BaseModel):
    days_old: int | None = Field(default=None, ge=0, le=3650)


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "NOT_FOUND", "message": "Queue item not found"},
    )


async def _require_item(db: AsyncSession, item_id: str) -> QueueItem:
    row = await get_item(session=db, item_id=item_id)
    if row is None:
        raise _not_found()
    return row


@router.get("", response_model=SuccessEnvelope[dict[str, Any]])
async def list_queue_items(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    kind: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    include_stats: bool = Query(default=True),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Page newest-first so operators see recent failures without scrolling.
    rows, total = await list_items(session=db, status=status_filter, kind=kind, limit=limit, offset=offset)
    data: dict[str, Any] = {"items": [item_payload(row) for row in rows], "total": total}
    if include_stats:
        data["stats"] = dict(await get_queue_stats(session=db))
    page = page_meta(limit=limit, offset=offset, returned=len(rows), total=total)
    return success_response(request=request, data=data, page=page)


@router.get("/stats", response_model=SuccessEnvelope[dict[str, int]])
async def queue_stats(request: Request, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    return success_response(request=request, data=dict(await get_queue_stats(session=db)))


@router.get("/search", response_model=SuccessEnvelope[dict[str, Any]])
async def search_queue_items(
    request: Request,
    q: str = Query(..., min_length=1, max_length=256),
    status_filter: str | None = Query(default=None, alias="status"),
    kind: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await search_items(
        session=db,
        term=q,
        status=status_filter,
        kind=kind,
        created_after=created_after,
        created_before=created_before,
        limit=limit,
    )
    return success_response(
        request=request,
        data={"items": [item_payload(row) for row in rows]},
        page=page_meta(limit=limit, offset=0, returned=len(rows)),
    )


@router.post("/cleanup", response_model=SuccessEnvelope[dict[str, int]])
async def cleanup_queue(
    request: Request,
    payload: CleanupRequest | None = None,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Retention sweep for delivered rows; pending and failed rows are never touched here.
    days_old = payload.days_old if payload is not None else None
    deleted = await cleanup_sent_items(session=db, days_old=days_old)
    return success_response(request=request, data={"deleted": deleted})


@router.get("/{item_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_queue_item(item_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    row = await _require_item(db, item_id)
    return success_response(request=request, data=item_payload(row))


@router.post("/{item_id}/cancel", response_model=SuccessEnvelope[dict[str, Any]])
async def cancel_queue_item(item_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    result = await cancel_item(session=db, item_id=item_id)
    if not result.success:
        if result.message == MESSAGE_NOT_FOUND:
            raise _not_found()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "QUEUE_STATE_CONFLICT", "message": result.message, "status": result.status},
        )
    return success_response(
        request=request,
        data={"success": result.success, "message": result.message, "status": result.status},
    )


@router.post("/{item_id}/retry", response_model=SuccessEnvelope[dict[str, Any]])
async def retry_queue_item(
    item_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    dispatcher: DeliveryDispatcher = Depends(get_queue_dispatcher),
) -> dict[str, Any]:
    # Immediate operator retry; state conflicts surface as 409 through the error handler.
    result = await dispatcher.retry_item_now(item_id)
    row = await _require_item(db, item_id)
    return success_response(
        request=request,
        data={"outcome": result.outcome.value, "error": result.error, "item": item_payload(row)},
    )


@router.delete("/{item_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def delete_queue_item(item_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    row = await _require_item(db, item_id)
    if row.status == STATUS_PROCESSING:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "QUEUE_STATE_CONFLICT", "message": "Queue item is currently processing"},
        )
    if not await delete_item(session=db, item_id=item_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "QUEUE_STATE_CONFLICT", "message": "Queue item changed state; retry the delete"},
        )
    return success_response(request=request, data={"deleted": True, "id": item_id})
