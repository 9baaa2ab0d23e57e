from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from courier.core.clock import as_utc, utc_now
from courier.core.config import get_settings
from courier.domain.models import QueueItem
from courier.domain.queue import STATUS_FAILED, STATUS_PENDING, STATUS_PROCESSING
from courier.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_EXHAUSTED_STUCK_MESSAGE = "abandoned while processing after exhausting retries"


async def reap_stuck_items(
    *,
    session: AsyncSession,
    threshold_s: int | None = None,
    now: datetime | None = None,
) -> int:
    """Return abandoned processing rows to the queue and report how many were reset.

    Rows whose retries are already exhausted cannot be retried, so they are failed
    instead of being reset; those are not part of the returned count.
    """
    settings = get_settings()
    threshold = settings.queue_stuck_threshold_s if threshold_s is None else threshold_s
    current = as_utc(now) or utc_now()
    cutoff = current - timedelta(seconds=max(0, int(threshold)))

    # retry_count is left untouched; the crashed attempt never reported an outcome.
    reset = await session.execute(
        update(QueueItem)
        .where(
            QueueItem.status == STATUS_PROCESSING,
            QueueItem.updated_at < cutoff,
            QueueItem.retry_count < QueueItem.max_retries,
        )
        .values(status=STATUS_PENDING, owner_id=None, updated_at=current)
        .execution_options(synchronize_session=False)
    )
    failed = await session.execute(
        update(QueueItem)
        .where(
            QueueItem.status == STATUS_PROCESSING,
            QueueItem.updated_at < cutoff,
            QueueItem.retry_count >= QueueItem.max_retries,
        )
        .values(
            status=STATUS_FAILED,
            owner_id=None,
            error_message=_EXHAUSTED_STUCK_MESSAGE,
            updated_at=current,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    reset_count = int(reset.rowcount or 0)
    failed_count = int(failed.rowcount or 0)
    if reset_count:
        increment_counter("queue_stuck_reset_total", reset_count)
        logger.warning("queue_stuck_items_reset count=%s threshold_s=%s", reset_count, threshold)
    if failed_count:
        increment_counter("queue_stuck_failed_total", failed_count)
        logger.warning("queue_stuck_items_failed count=%s threshold_s=%s", failed_count, threshold)
    return reset_count
