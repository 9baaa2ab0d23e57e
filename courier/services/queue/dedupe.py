from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courier.core.config import get_settings
from courier.domain.models import QueueItem
from courier.domain.queue import LIVE_STATUSES


def dedupe_window_start(*, now: datetime, window_seconds: int) -> datetime:
    # Sliding window anchored at the enqueue time, not a rounded bucket.
    return now - timedelta(seconds=max(0, int(window_seconds)))


def discriminators_match(existing: str | None, incoming: str | None) -> bool:
    # Different discriminators are different events; a one-sided value never matches.
    if existing is None and incoming is None:
        return bool(get_settings().queue_dedupe_missing_discriminator_matches)
    if existing is None or incoming is None:
        return False
    return existing == incoming


async def find_duplicate(
    *,
    session: AsyncSession,
    kind: str,
    target: str,
    business_key: str | None,
    discriminator: str | None,
    now: datetime,
) -> str | None:
    """Return the id of a live item equivalent to the one being enqueued.

    The lookup runs before the insert without a lock, so two concurrent enqueues can
    both miss each other; suppression is best-effort, and delivery stays
    at-least-once.
    """
    if not business_key:
        return None
    settings = get_settings()
    window_start = dedupe_window_start(now=now, window_seconds=settings.queue_dedupe_window_s)
    rows = (
        await session.execute(
            select(QueueItem.id, QueueItem.discriminator)
            .where(
                QueueItem.kind == kind,
                QueueItem.target == target,
                QueueItem.business_key == business_key,
                QueueItem.status.in_(LIVE_STATUSES),
                QueueItem.created_at >= window_start,
            )
            .order_by(QueueItem.created_at.asc(), QueueItem.id.asc())
        )
    ).all()
    check_discriminator = kind in settings.discriminator_kinds()
    for item_id, existing_discriminator in rows:
        if not check_discriminator or discriminators_match(existing_discriminator, discriminator):
            return str(item_id)
    return None
