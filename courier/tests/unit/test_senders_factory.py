from __future__ import annotations

import pytest

from courier.core.config import get_settings
from courier.core.errors import SenderConfigError, UnknownJobTypeError
from courier.services.senders.base import Delivery, NoopSender, OutboundMessage
from courier.services.senders.factory import KindRoutingSender, get_notification_sender, get_sender
from courier.services.senders.fake import FakeSender
from courier.services.senders.jobs import (
    JobSender,
    register_job_handler,
    registered_job_types,
    unregister_job_handler,
)


def _delivery(kind: str, target: str, payload: dict | None = None) -> Delivery:
    return Delivery(item_id="item-1", kind=kind, target=target, payload=payload or {})


@pytest.mark.asyncio
async def test_registered_job_handlers_receive_args() -> None:
    calls: list[dict] = []

    async def send_digest(args: dict) -> None:
        calls.append(args)

    register_job_handler("send_digest", send_digest)
    assert registered_job_types() == ["send_digest"]

    await JobSender().send(_delivery("generic_job", "send_digest", {"args": {"day": "2026-03-02"}}))
    assert calls == [{"day": "2026-03-02"}]

    unregister_job_handler("send_digest")
    with pytest.raises(UnknownJobTypeError):
        await JobSender().send(_delivery("generic_job", "send_digest"))


@pytest.mark.asyncio
async def test_kind_routing_sender_splits_jobs_from_notifications() -> None:
    calls: list[dict] = []

    async def purge(args: dict) -> None:
        calls.append(args)

    notifications = FakeSender()
    sender = KindRoutingSender(notifications, JobSender({"purge": purge}))

    await sender.send(_delivery("generic_job", "purge", {"args": {"days": 1}}))
    await sender.send(_delivery("admin_notification", "ops@example.com", {"subject": "New booking"}))
    await sender.send_message(OutboundMessage(to="ops@example.com", subject="Alert", text="x"))

    assert calls == [{"days": 1}]
    assert [delivery.target for delivery in notifications.deliveries] == ["ops@example.com"]
    assert len(notifications.messages) == 1


@pytest.mark.asyncio
async def test_routing_sender_needs_direct_message_support() -> None:
    class _DeliveryOnly:
        async def send(self, delivery: Delivery) -> None:
            return None

    with pytest.raises(SenderConfigError):
        await KindRoutingSender(_DeliveryOnly()).send_message(OutboundMessage(to="a@b.c", subject="x"))


@pytest.mark.asyncio
async def test_sender_backend_selection(monkeypatch) -> None:
    monkeypatch.setenv("SENDER_BACKEND", "fake")
    get_settings.cache_clear()
    assert isinstance(await get_notification_sender(), FakeSender)

    monkeypatch.setenv("SENDER_BACKEND", "noop")
    get_settings.cache_clear()
    assert isinstance(await get_notification_sender(), NoopSender)
    assert isinstance((await get_sender()).notification_sender, NoopSender)

    monkeypatch.setenv("SENDER_BACKEND", "pigeon")
    get_settings.cache_clear()
    with pytest.raises(SenderConfigError):
        await get_notification_sender()
