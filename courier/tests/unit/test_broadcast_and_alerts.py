from __future__ import annotations

import json

import httpx
import pytest

from courier.core.config import get_settings
from courier.domain.models import QueueItem
from courier.domain.queue import EVENT_FAILED, EVENT_SENT
from courier.services.alerts import (
    LoggingOperatorNotifier,
    SenderOperatorNotifier,
    get_operator_notifier,
    safe_notify_exhausted,
)
from courier.services.broadcast import (
    NoopBroadcaster,
    WebhookBroadcaster,
    event_payload,
    get_broadcaster,
    safe_broadcast,
)
from courier.services.senders.fake import FakeSender
from courier.services.telemetry import counters_snapshot


def _item(**overrides) -> QueueItem:
    values = {
        "id": "item-1",
        "kind": "status_change",
        "target": "guest@example.com",
        "payload": '{"subject":"Approved"}',
        "status": "failed",
        "retry_count": 5,
        "max_retries": 5,
        "business_key": "res-1",
        "next_retry_at": None,
        "error_message": "connection refused",
    }
    values.update(overrides)
    return QueueItem(**values)


def test_event_payload_omits_recipient_and_content() -> None:
    payload = event_payload(EVENT_SENT, _item(status="sent"))
    assert payload["event"] == EVENT_SENT
    assert payload["item"]["id"] == "item-1"
    assert payload["item"]["status"] == "sent"
    serialized = json.dumps(payload)
    assert "guest@example.com" not in serialized
    assert "Approved" not in serialized


@pytest.mark.asyncio
async def test_webhook_broadcaster_posts_event() -> None:
    received: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(204)

    broadcaster = WebhookBroadcaster("https://hooks.example.com/queue", transport=httpx.MockTransport(handler))
    await broadcaster.notify(EVENT_FAILED, _item())

    assert received[0]["event"] == EVENT_FAILED
    assert received[0]["item"]["retry_count"] == 5


@pytest.mark.asyncio
async def test_safe_broadcast_swallows_listener_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    broadcaster = WebhookBroadcaster("https://hooks.example.com/queue", transport=httpx.MockTransport(handler))
    with pytest.raises(httpx.HTTPStatusError):
        await broadcaster.notify(EVENT_SENT, _item())

    await safe_broadcast(broadcaster, EVENT_SENT, _item())
    await safe_broadcast(None, EVENT_SENT, _item())


def test_get_broadcaster_uses_webhook_only_when_configured(monkeypatch) -> None:
    assert isinstance(get_broadcaster(), NoopBroadcaster)
    monkeypatch.setenv("BROADCAST_WEBHOOK_URL", "https://hooks.example.com/queue")
    get_settings.cache_clear()
    assert isinstance(get_broadcaster(), WebhookBroadcaster)


@pytest.mark.asyncio
async def test_sender_notifier_mails_operator_directly() -> None:
    sender = FakeSender()
    notifier = SenderOperatorNotifier(sender, "ops@example.com")

    await notifier.notify_exhausted(_item())

    assert len(sender.messages) == 1
    message = sender.messages[0]
    assert message.to == "ops@example.com"
    assert "item-1" in message.subject
    assert "connection refused" in message.text
    assert sender.deliveries == []
    assert counters_snapshot()["queue_item_exhausted_total"] == 1


@pytest.mark.asyncio
async def test_operator_alert_failures_are_contained() -> None:
    class _BrokenSender:
        async def send_message(self, message) -> None:  # noqa: ANN001
            raise ConnectionError("smtp down")

    class _BrokenNotifier:
        async def notify_exhausted(self, item) -> None:  # noqa: ANN001
            raise RuntimeError("boom")

    await SenderOperatorNotifier(_BrokenSender(), "ops@example.com").notify_exhausted(_item())
    await safe_notify_exhausted(_BrokenNotifier(), _item())
    await safe_notify_exhausted(None, _item())


def test_get_operator_notifier_requires_operator_email(monkeypatch) -> None:
    sender = FakeSender()
    assert isinstance(get_operator_notifier(sender), LoggingOperatorNotifier)
    monkeypatch.setenv("OPERATOR_EMAIL", "ops@example.com")
    get_settings.cache_clear()
    assert isinstance(get_operator_notifier(sender), SenderOperatorNotifier)
    assert isinstance(get_operator_notifier(None), LoggingOperatorNotifier)
