from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from courier.core.config import get_settings
from courier.core.errors import PayloadTooLargeError, QueueValidationError
from courier.domain.models import QueueItem
from courier.domain.queue import (
    EVENT_ENQUEUED,
    PRIORITY_CRITICAL,
    PRIORITY_NORMAL,
    STATUS_PENDING,
    EnqueueOptions,
    NotificationContent,
)
from courier.services.queue.enqueue import enqueue_item, enqueue_item_detailed, enqueue_job, enqueue_rendered
from courier.services.telemetry import counters_snapshot
from courier.tests.utils.queue import BASE_NOW, enqueue_due, force_state, load_item


class _RecordingBroadcaster:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    async def notify(self, event_kind, item) -> None:  # noqa: ANN001
        self.events.append((event_kind, item.id))


async def _count(session) -> int:  # noqa: ANN001
    return int(await session.scalar(select(func.count()).select_from(QueueItem)))


@pytest.mark.asyncio
async def test_enqueue_persists_pending_item(session) -> None:
    broadcaster = _RecordingBroadcaster()
    item_id = await enqueue_item(
        session=session,
        kind="user_confirmation",
        target=" guest@example.com ",
        payload=NotificationContent(subject="Booked", html="<p>Booked</p>", reply_to="desk@example.com"),
        metadata={"businessKey": "res-1", "locale": "en"},
        broadcaster=broadcaster,
        now=BASE_NOW,
    )

    row = await load_item(session, item_id)
    assert row.status == STATUS_PENDING
    assert row.target == "guest@example.com"
    assert row.retry_count == 0
    assert row.max_retries == 5
    assert row.business_key == "res-1"
    assert row.priority == PRIORITY_NORMAL
    assert '"replyTo":"desk@example.com"' in row.payload
    # Without an explicit schedule the worker waits one backoff step for the inline attempt.
    assert row.next_retry_at is not None
    assert row.next_retry_at.replace(tzinfo=None) >= (BASE_NOW + timedelta(seconds=60)).replace(tzinfo=None)
    assert broadcaster.events == [(EVENT_ENQUEUED, item_id)]
    assert counters_snapshot()["queue_enqueued_total"] == 1


@pytest.mark.asyncio
async def test_enqueue_validates_input(session) -> None:
    with pytest.raises(QueueValidationError):
        await enqueue_item(session=session, kind="carrier_pigeon", target="a@b.c", payload={"subject": "x"})
    with pytest.raises(QueueValidationError):
        await enqueue_item(session=session, kind="user_confirmation", target="  ", payload={"subject": "x"})
    with pytest.raises(QueueValidationError):
        await enqueue_item(
            session=session,
            kind="user_confirmation",
            target="a@b.c",
            payload={"subject": "x"},
            options=EnqueueOptions(max_retries=-1),
        )
    with pytest.raises(QueueValidationError, match="max_retries"):
        await enqueue_item(
            session=session,
            kind="user_confirmation",
            target="a@b.c",
            payload={"subject": "x"},
            options=EnqueueOptions(max_retries=0),
        )
    assert await _count(session) == 0


@pytest.mark.asyncio
async def test_oversized_payload_is_rejected_not_truncated(session, monkeypatch) -> None:
    monkeypatch.setenv("QUEUE_MAX_PAYLOAD_BYTES", "512")
    get_settings.cache_clear()
    with pytest.raises(PayloadTooLargeError):
        await enqueue_item(
            session=session,
            kind="user_confirmation",
            target="guest@example.com",
            payload={"subject": "Big", "html": "x" * 1024},
        )
    assert await _count(session) == 0


@pytest.mark.asyncio
async def test_critical_kinds_get_critical_priority(session) -> None:
    critical_id = await enqueue_due(session, kind="status_change", metadata={"businessKey": "r", "status": "ok"})
    normal_id = await enqueue_due(session, kind="auto_update")
    override_id = await enqueue_due(session, kind="auto_update", priority=99)
    assert (await load_item(session, critical_id)).priority == PRIORITY_CRITICAL
    assert (await load_item(session, normal_id)).priority == PRIORITY_NORMAL
    assert (await load_item(session, override_id)).priority == 99


@pytest.mark.asyncio
async def test_duplicate_business_key_returns_existing_item(session) -> None:
    first = await enqueue_due(session, metadata={"businessKey": "res-7"})
    result = await enqueue_item_detailed(
        session=session,
        kind="user_confirmation",
        target="guest@example.com",
        payload={"subject": "Again", "text": "again"},
        metadata={"businessKey": "res-7"},
        now=BASE_NOW + timedelta(seconds=30),
    )
    assert result.item_id == first
    assert result.created is False
    assert await _count(session) == 1
    assert counters_snapshot()["queue_enqueue_deduplicated_total"] == 1


@pytest.mark.asyncio
async def test_dedup_is_scoped_to_kind_and_target(session) -> None:
    first = await enqueue_due(session, metadata={"businessKey": "res-7"})
    other_target = await enqueue_due(session, target="other@example.com", metadata={"businessKey": "res-7"})
    other_kind = await enqueue_due(session, kind="admin_notification", metadata={"businessKey": "res-7"})
    assert len({first, other_target, other_kind}) == 3


@pytest.mark.asyncio
async def test_status_change_dedup_compares_discriminator(session) -> None:
    approved = await enqueue_due(session, kind="status_change", metadata={"businessKey": "r-1", "status": "approved"})
    same = await enqueue_due(session, kind="status_change", metadata={"businessKey": "r-1", "status": "approved"})
    declined = await enqueue_due(session, kind="status_change", metadata={"businessKey": "r-1", "status": "declined"})
    one_sided = await enqueue_due(session, kind="status_change", metadata={"businessKey": "r-1"})
    assert same == approved
    assert declined != approved
    assert one_sided not in {approved, declined}


@pytest.mark.asyncio
async def test_missing_discriminators_match_unless_disabled(session, monkeypatch) -> None:
    first = await enqueue_due(session, kind="status_change", metadata={"businessKey": "r-2"})
    assert await enqueue_due(session, kind="status_change", metadata={"businessKey": "r-2"}) == first

    monkeypatch.setenv("QUEUE_DEDUPE_MISSING_DISCRIMINATOR_MATCHES", "false")
    get_settings.cache_clear()
    assert await enqueue_due(session, kind="status_change", metadata={"businessKey": "r-2"}) != first


@pytest.mark.asyncio
async def test_dedup_window_expires(session) -> None:
    first = await enqueue_due(session, metadata={"businessKey": "res-9"})
    later = await enqueue_due(session, metadata={"businessKey": "res-9"}, now=BASE_NOW + timedelta(minutes=11))
    assert later != first


@pytest.mark.asyncio
async def test_dedup_ignores_finished_items(session) -> None:
    first = await enqueue_due(session, metadata={"businessKey": "res-3"})
    await force_state(session, first, status="sent", sent_at=BASE_NOW)
    second = await enqueue_due(session, metadata={"businessKey": "res-3"})
    assert second != first


@pytest.mark.asyncio
async def test_skip_dedup_always_inserts(session) -> None:
    first = await enqueue_due(session, metadata={"businessKey": "res-4"})
    forced = await enqueue_item(
        session=session,
        kind="user_confirmation",
        target="guest@example.com",
        payload={"subject": "Forced", "text": "forced"},
        metadata={"businessKey": "res-4"},
        options=EnqueueOptions(skip_dedup=True, scheduled_at=BASE_NOW),
        now=BASE_NOW,
    )
    assert forced != first
    assert await _count(session) == 2


@pytest.mark.asyncio
async def test_enqueue_job_is_immediately_due(session) -> None:
    item_id = await enqueue_job(
        session=session,
        job_type="purge_expired_holds",
        args={"older_than_days": 3},
        now=BASE_NOW,
    )
    row = await load_item(session, item_id)
    assert row.kind == "generic_job"
    assert row.target == "purge_expired_holds"
    assert row.max_retries == 3
    assert row.payload == '{"args":{"older_than_days":3}}'
    assert row.next_retry_at.replace(tzinfo=None) == BASE_NOW.replace(tzinfo=None)


class _ConfirmationTemplates:
    def render(self, kind, context) -> NotificationContent:  # noqa: ANN001
        return NotificationContent(
            subject=f"Reservation {context['code']} received",
            text=f"Hello {context['name']}",
        )


class _BrokenTemplates:
    def render(self, kind, context):  # noqa: ANN001
        return {"subject": "not content"}


@pytest.mark.asyncio
async def test_enqueue_rendered_stores_provider_output(session) -> None:
    item_id = await enqueue_rendered(
        session=session,
        kind="user_confirmation",
        target="guest@example.com",
        provider=_ConfirmationTemplates(),
        context={"code": "R-12", "name": "Ana"},
        now=BASE_NOW,
    )
    row = await load_item(session, item_id)
    assert row.payload == '{"subject":"Reservation R-12 received","text":"Hello Ana"}'

    with pytest.raises(QueueValidationError):
        await enqueue_rendered(
            session=session,
            kind="user_confirmation",
            target="guest@example.com",
            provider=_BrokenTemplates(),
            context={},
        )
