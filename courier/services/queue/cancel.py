from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courier.core.clock import as_utc, utc_now
from courier.core.config import get_settings
from courier.domain.models import QueueItem
from courier.domain.queue import (
    EVENT_CANCELLED,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_SENT,
    CancelResult,
)
from courier.services.broadcast import Broadcaster, safe_broadcast
from courier.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

MESSAGE_CANCELLED = "cancelled"
MESSAGE_ALREADY_SENT = "already sent, cannot cancel"
MESSAGE_ALREADY_CANCELLED = "already cancelled"
MESSAGE_NOT_FOUND = "not found"
MESSAGE_IN_FLIGHT = "cancelled while processing; an in-flight send may still complete"


async def _status_of(session: AsyncSession, item_id: str) -> str | None:
    return await session.scalar(select(QueueItem.status).where(QueueItem.id == item_id))


async def _conditional_cancel(
    session: AsyncSession,
    item_id: str,
    statuses: tuple[str, ...],
    now: datetime,
) -> bool:
    result = await session.execute(
        update(QueueItem)
        .where(QueueItem.id == item_id, QueueItem.status.in_(statuses))
        .values(status=STATUS_CANCELLED, owner_id=None, next_retry_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return bool(result.rowcount)


async def _cancelled(
    session: AsyncSession,
    item_id: str,
    message: str,
    broadcaster: Broadcaster | None,
) -> CancelResult:
    increment_counter("queue_cancelled_total")
    logger.info("queue_item_cancelled item_id=%s message=%s", item_id, message)
    if broadcaster is not None:
        row = (
            await session.execute(
                select(QueueItem).where(QueueItem.id == item_id).execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if row is not None:
            await safe_broadcast(broadcaster, EVENT_CANCELLED, row)
    return CancelResult(success=True, message=message, status=STATUS_CANCELLED)


async def cancel_item(
    *,
    session: AsyncSession,
    item_id: str,
    now: datetime | None = None,
    broadcaster: Broadcaster | None = None,
) -> CancelResult:
    """Stop an item from being delivered.

    Pending and failed items are cancelled outright. A processing item is
    cancelled as well, but its worker may already be talking to the transport,
    so the send can still happen; the later ``mark_sent`` is then a no-op.
    """
    current = as_utc(now) or utc_now()
    if await _conditional_cancel(session, item_id, (STATUS_PENDING, STATUS_FAILED), current):
        return await _cancelled(session, item_id, MESSAGE_CANCELLED, broadcaster)

    status = await _status_of(session, item_id)
    if status is None:
        return CancelResult(success=False, message=MESSAGE_NOT_FOUND)
    if status == STATUS_SENT:
        return CancelResult(success=False, message=MESSAGE_ALREADY_SENT, status=status)
    if status == STATUS_CANCELLED:
        return CancelResult(success=True, message=MESSAGE_ALREADY_CANCELLED, status=status)
    if status == STATUS_PROCESSING and await _conditional_cancel(
        session, item_id, (STATUS_PROCESSING,), current
    ):
        return await _cancelled(session, item_id, MESSAGE_IN_FLIGHT, broadcaster)

    # The row moved between our reads; report what it is now.
    status = await _status_of(session, item_id)
    if status == STATUS_SENT:
        return CancelResult(success=False, message=MESSAGE_ALREADY_SENT, status=status)
    if status == STATUS_CANCELLED:
        return CancelResult(success=True, message=MESSAGE_ALREADY_CANCELLED, status=status)
    return CancelResult(success=False, message=f"cannot cancel item in status '{status}'", status=status)


async def delete_item(*, session: AsyncSession, item_id: str) -> bool:
    # Operator tooling only; a processing row is left alone so its worker can finish.
    result = await session.execute(
        delete(QueueItem)
        .where(QueueItem.id == item_id, QueueItem.status != STATUS_PROCESSING)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    deleted = bool(result.rowcount)
    if deleted:
        logger.info("queue_item_deleted item_id=%s", item_id)
    return deleted


async def cleanup_sent_items(
    *,
    session: AsyncSession,
    days_old: int | None = None,
    now: datetime | None = None,
) -> int:
    settings = get_settings()
    retention_days = settings.queue_sent_retention_days if days_old is None else days_old
    current = as_utc(now) or utc_now()
    cutoff = current - timedelta(days=max(0, int(retention_days)))
    result = await session.execute(
        delete(QueueItem)
        .where(QueueItem.status == STATUS_SENT, QueueItem.sent_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    deleted = int(result.rowcount or 0)
    if deleted:
        increment_counter("queue_sent_pruned_total", deleted)
    logger.info("queue_sent_items_pruned deleted=%s retention_days=%s", deleted, retention_days)
    return deleted
