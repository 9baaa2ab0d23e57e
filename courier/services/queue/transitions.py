from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courier.core.clock import as_utc, utc_now
from courier.domain.models import QueueItem
from courier.domain.queue import (
    EVENT_FAILED,
    EVENT_RETRY_SCHEDULED,
    EVENT_SENT,
    LIVE_STATUSES,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_SENT,
    RetryDecision,
)
from courier.services.alerts import OperatorNotifier, safe_notify_exhausted
from courier.services.broadcast import Broadcaster, safe_broadcast
from courier.services.queue.backoff import next_retry_time
from courier.services.queue.codec import sanitize_error_message
from courier.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


async def _reload(session: AsyncSession, item_id: str) -> QueueItem | None:
    # Bypass the identity map; conditional updates run without session synchronization.
    return (
        await session.execute(
            select(QueueItem).where(QueueItem.id == item_id).execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def mark_sent(
    *,
    session: AsyncSession,
    item_id: str,
    owner_id: str | None = None,
    now: datetime | None = None,
    broadcaster: Broadcaster | None = None,
) -> bool:
    # Returns False when the item left processing meanwhile, e.g. cancelled mid-flight.
    current = as_utc(now) or utc_now()
    stmt = update(QueueItem).where(QueueItem.id == item_id, QueueItem.status == STATUS_PROCESSING)
    if owner_id is not None:
        stmt = stmt.where(QueueItem.owner_id == owner_id)
    result = await session.execute(
        stmt.values(
            status=STATUS_SENT,
            sent_at=current,
            owner_id=None,
            error_message=None,
            updated_at=current,
        ).execution_options(synchronize_session=False)
    )
    await session.commit()
    if not result.rowcount:
        logger.info("queue_mark_sent_skipped item_id=%s owner_id=%s", item_id, owner_id)
        return False
    increment_counter("queue_sent_total")
    logger.info("queue_item_sent item_id=%s", item_id)
    if broadcaster is not None:
        row = await _reload(session, item_id)
        if row is not None:
            await safe_broadcast(broadcaster, EVENT_SENT, row)
    return True


async def schedule_retry(
    *,
    session: AsyncSession,
    item_id: str,
    error_message: str,
    owner_id: str | None = None,
    now: datetime | None = None,
    notifier: OperatorNotifier | None = None,
    broadcaster: Broadcaster | None = None,
) -> RetryDecision:
    """Record a failed attempt and either reschedule the item or fail it for good.

    The update is conditional on the retry count observed here, so two workers
    reporting the same attempt increment it once.
    """
    current = as_utc(now) or utc_now()
    row = await _reload(session, item_id)
    if row is None or row.status not in LIVE_STATUSES:
        await session.rollback()
        logger.info("queue_retry_skipped item_id=%s status=%s", item_id, row.status if row else None)
        return RetryDecision(applied=False, status=row.status if row else None)

    observed = int(row.retry_count)
    new_count = observed + 1
    exhausted = new_count >= int(row.max_retries)
    message = sanitize_error_message(error_message)
    values: dict[str, object] = {
        "retry_count": new_count,
        "error_message": message,
        "owner_id": None,
        "updated_at": current,
    }
    if exhausted:
        values["status"] = STATUS_FAILED
        values["next_retry_at"] = None
    else:
        values["status"] = STATUS_PENDING
        # Backoff steps are indexed by the count before this failure.
        values["next_retry_at"] = next_retry_time(now=current, retry_count=observed, item_id=item_id)

    stmt = update(QueueItem).where(
        QueueItem.id == item_id,
        QueueItem.status.in_(LIVE_STATUSES),
        QueueItem.retry_count == observed,
    )
    if owner_id is not None:
        stmt = stmt.where(QueueItem.owner_id == owner_id)
    result = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
    await session.commit()
    if not result.rowcount:
        logger.debug("queue_retry_race_lost item_id=%s observed_retry_count=%s", item_id, observed)
        return RetryDecision(applied=False)

    updated = await _reload(session, item_id)
    if exhausted:
        increment_counter("queue_failed_total")
        logger.warning("queue_item_failed item_id=%s retry_count=%s error=%s", item_id, new_count, message)
        if updated is not None:
            await safe_notify_exhausted(notifier, updated)
            await safe_broadcast(broadcaster, EVENT_FAILED, updated)
        return RetryDecision(applied=True, status=STATUS_FAILED, retry_count=new_count)

    increment_counter("queue_retry_scheduled_total")
    next_retry_at = values["next_retry_at"]
    logger.info(
        "queue_retry_scheduled item_id=%s retry_count=%s next_retry_at=%s",
        item_id,
        new_count,
        next_retry_at.isoformat() if isinstance(next_retry_at, datetime) else None,
    )
    if updated is not None:
        await safe_broadcast(broadcaster, EVENT_RETRY_SCHEDULED, updated)
    return RetryDecision(
        applied=True,
        status=STATUS_PENDING,
        retry_count=new_count,
        next_retry_at=next_retry_at if isinstance(next_retry_at, datetime) else None,
    )


async def release_items(
    *,
    session: AsyncSession,
    item_ids: Sequence[str],
    owner_id: str,
    now: datetime | None = None,
) -> int:
    # Hand claimed-but-unattempted items back without consuming a retry.
    if not item_ids:
        return 0
    current = as_utc(now) or utc_now()
    result = await session.execute(
        update(QueueItem)
        .where(
            QueueItem.id.in_(list(item_ids)),
            QueueItem.status == STATUS_PROCESSING,
            QueueItem.owner_id == owner_id,
        )
        .values(status=STATUS_PENDING, owner_id=None, updated_at=current)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    released = int(result.rowcount or 0)
    if released:
        increment_counter("queue_released_total", released)
        logger.info("queue_items_released count=%s owner_id=%s", released, owner_id)
    return released


async def quarantine_metadata(*, session: AsyncSession, item_id: str) -> None:
    # Flag rows with unreadable metadata for operators; delivery proceeds regardless.
    await session.execute(
        update(QueueItem)
        .where(QueueItem.id == item_id, QueueItem.metadata_quarantined.is_(False))
        .values(metadata_quarantined=True)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    increment_counter("queue_metadata_quarantined_total")
    logger.warning("queue_metadata_quarantined item_id=%s", item_id)
