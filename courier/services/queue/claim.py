from __future__ import annotations

import logging
import os
import socket
from collections.abc import Iterable
from datetime import datetime
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courier.core.clock import as_utc, utc_now
from courier.core.config import get_settings
from courier.domain.models import QueueItem
from courier.domain.queue import STATUS_FAILED, STATUS_PENDING, STATUS_PROCESSING
from courier.services.queue.reaper import reap_stuck_items
from courier.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def default_owner_id() -> str:
    # Unique per process start so a restarted worker never inherits its predecessor's claims.
    configured = get_settings().queue_worker_id
    if configured:
        return configured
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


def _claim_order():
    return (QueueItem.priority.desc(), QueueItem.created_at.asc(), QueueItem.id.asc())


async def claim_items(
    *,
    session: AsyncSession,
    limit: int,
    owner_id: str,
    kinds: Iterable[str] | None = None,
    now: datetime | None = None,
    reap: bool = True,
) -> list[QueueItem]:
    """Atomically move up to ``limit`` due items to processing for ``owner_id``.

    Returns exactly the rows this owner won, in claim order. Rows another worker
    took between the candidate scan and the conditional update are dropped.
    """
    if limit <= 0:
        return []
    if reap:
        try:
            await reap_stuck_items(session=session, now=now)
        except Exception:
            # Recovery is opportunistic here; a failed pass must not block fresh claims.
            await session.rollback()
            logger.exception("queue_reaper_pass_failed owner_id=%s", owner_id)

    claim_at = as_utc(now) or utc_now()
    kind_filter = sorted(set(kinds)) if kinds is not None else None
    if kind_filter is not None and not kind_filter:
        return []

    candidates = (
        select(QueueItem.id)
        .where(
            QueueItem.status == STATUS_PENDING,
            or_(QueueItem.next_retry_at.is_(None), QueueItem.next_retry_at <= claim_at),
            QueueItem.retry_count < QueueItem.max_retries,
        )
        .order_by(*_claim_order())
        .limit(int(limit))
        .with_for_update(skip_locked=True)
    )
    if kind_filter is not None:
        candidates = candidates.where(QueueItem.kind.in_(kind_filter))
    candidate_ids = [str(item_id) for item_id in (await session.execute(candidates)).scalars().all()]
    if not candidate_ids:
        await session.rollback()
        return []

    # The status predicate is the claim: a row another worker already moved stays untouched.
    await session.execute(
        update(QueueItem)
        .where(QueueItem.id.in_(candidate_ids), QueueItem.status == STATUS_PENDING)
        .values(status=STATUS_PROCESSING, owner_id=owner_id, updated_at=claim_at)
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    claimed = list(
        (
            await session.execute(
                select(QueueItem)
                .where(
                    QueueItem.owner_id == owner_id,
                    QueueItem.updated_at == claim_at,
                    QueueItem.status == STATUS_PROCESSING,
                )
                .order_by(*_claim_order())
                .execution_options(populate_existing=True)
            )
        ).scalars().all()
    )
    lost = len(candidate_ids) - len(claimed)
    if lost > 0:
        logger.debug("queue_claim_race_lost owner_id=%s lost=%s", owner_id, lost)
    if claimed:
        increment_counter("queue_claimed_total", len(claimed))
    return claimed


async def claim_item(
    *,
    session: AsyncSession,
    item_id: str,
    owner_id: str,
    allow_failed: bool = False,
    now: datetime | None = None,
) -> QueueItem | None:
    # Single-item claim for immediate sends and operator retries; ignores next_retry_at.
    claim_at = as_utc(now) or utc_now()
    allowed = [STATUS_PENDING, STATUS_FAILED] if allow_failed else [STATUS_PENDING]
    result = await session.execute(
        update(QueueItem)
        .where(QueueItem.id == item_id, QueueItem.status.in_(allowed))
        .values(status=STATUS_PROCESSING, owner_id=owner_id, updated_at=claim_at)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if not result.rowcount:
        logger.debug("queue_claim_item_missed item_id=%s owner_id=%s", item_id, owner_id)
        return None
    return (
        await session.execute(
            select(QueueItem)
            .where(QueueItem.id == item_id, QueueItem.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
