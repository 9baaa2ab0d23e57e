from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from courier.core.config import get_settings
from courier.domain.queue import STATUS_FAILED, STATUS_PENDING, STATUS_PROCESSING
from courier.services.queue.claim import claim_item, claim_items, default_owner_id
from courier.tests.utils.queue import BASE_NOW, enqueue_due, force_state, load_item


@pytest.mark.asyncio
async def test_claim_orders_by_priority_then_age(session) -> None:
    old_normal = await enqueue_due(session, kind="auto_update", target="a@example.com", now=BASE_NOW)
    new_normal = await enqueue_due(
        session, kind="auto_update", target="b@example.com", now=BASE_NOW + timedelta(seconds=1)
    )
    critical = await enqueue_due(
        session,
        kind="admin_notification",
        target="ops@example.com",
        now=BASE_NOW + timedelta(seconds=2),
    )

    claimed = await claim_items(
        session=session, limit=10, owner_id="worker-a", now=BASE_NOW + timedelta(minutes=1)
    )

    assert [row.id for row in claimed] == [critical, old_normal, new_normal]
    assert all(row.status == STATUS_PROCESSING and row.owner_id == "worker-a" for row in claimed)


@pytest.mark.asyncio
async def test_claim_skips_future_and_exhausted_items(session) -> None:
    due = await enqueue_due(session, target="due@example.com")
    future = await enqueue_due(session, target="later@example.com", now=BASE_NOW + timedelta(hours=1))
    exhausted = await enqueue_due(session, target="spent@example.com")
    await force_state(session, exhausted, retry_count=5)

    claimed = await claim_items(session=session, limit=10, owner_id="worker-a", now=BASE_NOW)

    assert [row.id for row in claimed] == [due]
    assert (await load_item(session, future)).status == STATUS_PENDING
    assert (await load_item(session, exhausted)).status == STATUS_PENDING


@pytest.mark.asyncio
async def test_claimed_items_are_not_claimed_again(session) -> None:
    await enqueue_due(session, target="one@example.com")
    await enqueue_due(session, target="two@example.com")

    first = await claim_items(session=session, limit=1, owner_id="worker-a", now=BASE_NOW)
    second = await claim_items(session=session, limit=10, owner_id="worker-b", now=BASE_NOW)
    third = await claim_items(session=session, limit=10, owner_id="worker-c", now=BASE_NOW)

    assert len(first) == 1
    assert len(second) == 1
    assert first[0].id != second[0].id
    assert second[0].owner_id == "worker-b"
    assert third == []


@pytest.mark.asyncio
async def test_concurrent_workers_never_share_an_item(session, session_factory) -> None:
    for index in range(8):
        await enqueue_due(session, target=f"guest{index}@example.com")

    async def _claim(owner: str) -> list[str]:
        async with session_factory() as worker_session:
            rows = await claim_items(session=worker_session, limit=8, owner_id=owner, now=BASE_NOW)
            return [row.id for row in rows]

    first, second = await asyncio.gather(_claim("worker-a"), _claim("worker-b"))

    assert not set(first) & set(second)
    assert len(first) + len(second) == 8


@pytest.mark.asyncio
async def test_claim_filters_by_kind(session) -> None:
    await enqueue_due(session, kind="auto_update")
    critical = await enqueue_due(session, kind="status_change", metadata={"businessKey": "r", "status": "ok"})

    claimed = await claim_items(
        session=session,
        limit=10,
        owner_id="cron",
        kinds={"status_change", "admin_notification"},
        now=BASE_NOW,
    )

    assert [row.id for row in claimed] == [critical]
    assert await claim_items(session=session, limit=10, owner_id="cron", kinds=set(), now=BASE_NOW) == []


@pytest.mark.asyncio
async def test_claim_item_ignores_schedule_and_can_take_failed(session) -> None:
    future = await enqueue_due(session, now=BASE_NOW + timedelta(hours=2))
    row = await claim_item(session=session, item_id=future, owner_id="inline", now=BASE_NOW)
    assert row is not None
    assert row.status == STATUS_PROCESSING
    assert await claim_item(session=session, item_id=future, owner_id="other", now=BASE_NOW) is None

    failed = await enqueue_due(session, target="failed@example.com")
    await force_state(session, failed, status=STATUS_FAILED, retry_count=5)
    assert await claim_item(session=session, item_id=failed, owner_id="ops", now=BASE_NOW) is None
    retried = await claim_item(session=session, item_id=failed, owner_id="ops", allow_failed=True, now=BASE_NOW)
    assert retried is not None
    assert retried.owner_id == "ops"


def test_default_owner_id_prefers_configured_value(monkeypatch) -> None:
    generated = default_owner_id()
    assert generated != default_owner_id()

    monkeypatch.setenv("QUEUE_WORKER_ID", "worker-7")
    get_settings.cache_clear()
    assert default_owner_id() == "worker-7"
