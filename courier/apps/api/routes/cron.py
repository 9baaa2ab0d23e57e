from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request

from courier.apps.api.deps import get_queue_dispatcher, require_cron
from courier.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from courier.apps.api.response import SuccessEnvelope, success_response
from courier.services.queue.dispatcher import DeliveryDispatcher
from courier.services.worker import run_delivery_cycle

router = APIRouter(
    prefix="/cron",
    tags=["cron"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_cron)],
)


# Hosted schedulers differ on verb, so the trigger accepts both.
@router.api_route("/queue", methods=["GET", "POST"], response_model=SuccessEnvelope[dict[str, Any]])
async def run_queue_cron(
    request: Request,
    scope: Literal["critical", "all"] = Query(default="critical"),
    limit: int | None = Query(default=None, ge=1, le=100),
    dispatcher: DeliveryDispatcher = Depends(get_queue_dispatcher),
) -> dict[str, Any]:
    result = await run_delivery_cycle(
        limit=limit,
        critical_only=scope == "critical",
        dispatcher=dispatcher,
    )
    result["processed"] = int(result.get("claimed", 0))
    return success_response(request=request, data=result)
