from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from courier.core.clock import as_utc, utc_now
from courier.core.config import get_settings
from courier.domain.models import QueueItem


logger = logging.getLogger(__name__)


class Broadcaster(Protocol):
    async def notify(self, event_kind: str, item: QueueItem) -> None:
        ...


class NoopBroadcaster:
    async def notify(self, event_kind: str, item: QueueItem) -> None:
        return None


def event_payload(event_kind: str, item: QueueItem) -> dict[str, Any]:
    # Lifecycle events carry identifiers and state only, never message content or recipients.
    next_retry_at = as_utc(item.next_retry_at)
    return {
        "event": event_kind,
        "occurred_at": utc_now().isoformat(),
        "item": {
            "id": item.id,
            "kind": item.kind,
            "status": item.status,
            "retry_count": item.retry_count,
            "max_retries": item.max_retries,
            "business_key": item.business_key,
            "next_retry_at": next_retry_at.isoformat() if next_retry_at else None,
        },
    }


class WebhookBroadcaster:
    def __init__(self, url: str, *, timeout_ms: int = 2000, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._url = url
        self._timeout_s = max(0.2, timeout_ms / 1000.0)
        self._transport = transport

    async def notify(self, event_kind: str, item: QueueItem) -> None:
        async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
            response = await client.post(self._url, json=event_payload(event_kind, item))
            response.raise_for_status()


async def safe_broadcast(broadcaster: Broadcaster | None, event_kind: str, item: QueueItem) -> None:
    # Broadcast is observability only; a failing listener must never affect queue state.
    if broadcaster is None:
        return
    try:
        await broadcaster.notify(event_kind, item)
    except Exception:  # noqa: BLE001 - listeners are best-effort by contract.
        logger.warning("queue_broadcast_failed event=%s item_id=%s", event_kind, item.id, exc_info=True)


def get_broadcaster() -> Broadcaster:
    settings = get_settings()
    if settings.broadcast_webhook_url:
        return WebhookBroadcaster(settings.broadcast_webhook_url, timeout_ms=settings.broadcast_timeout_ms)
    return NoopBroadcaster()
