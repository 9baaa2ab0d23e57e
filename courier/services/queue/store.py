from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import Select, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from courier.core.clock import as_utc
from courier.core.config import get_settings
from courier.core.errors import QueueValidationError
from courier.domain.models import QueueItem
from courier.domain.queue import QUEUE_STATUSES, QueueStats
from courier.persistence.db import is_postgres
from courier.services.queue.codec import decode_metadata, decode_payload, sanitize_metadata
from courier.services.telemetry import set_gauge


logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 200
_SEARCH_CONFIG = "simple"


def _bounded_limit(limit: int) -> int:
    return max(1, min(int(limit), _MAX_PAGE_SIZE))


async def get_item(*, session: AsyncSession, item_id: str) -> QueueItem | None:
    return (
        await session.execute(
            select(QueueItem).where(QueueItem.id == item_id).execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


def _apply_filters(
    stmt: Select,
    *,
    status: str | None,
    kind: str | None,
    created_after: datetime | None = None,
    created_before: datetime | None = None,
) -> Select:
    if status is not None:
        if status not in QUEUE_STATUSES:
            raise QueueValidationError(f"Unknown queue status '{status}'")
        stmt = stmt.where(QueueItem.status == status)
    if kind is not None:
        stmt = stmt.where(QueueItem.kind == kind)
    if created_after is not None:
        stmt = stmt.where(QueueItem.created_at >= as_utc(created_after))
    if created_before is not None:
        stmt = stmt.where(QueueItem.created_at < as_utc(created_before))
    return stmt


async def list_items(
    *,
    session: AsyncSession,
    status: str | None = None,
    kind: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[QueueItem], int]:
    # Newest first for admin views; total reflects the same filters.
    stmt = _apply_filters(select(QueueItem), status=status, kind=kind)
    count_stmt = _apply_filters(select(func.count()).select_from(QueueItem), status=status, kind=kind)
    rows = (
        await session.execute(
            stmt.order_by(QueueItem.created_at.desc(), QueueItem.id.desc())
            .limit(_bounded_limit(limit))
            .offset(max(0, int(offset)))
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    total = await session.scalar(count_stmt)
    return list(rows), int(total or 0)


def _substring_clause(term: str):
    return or_(
        QueueItem.target.icontains(term, autoescape=True),
        QueueItem.business_key.icontains(term, autoescape=True),
        QueueItem.metadata_raw.icontains(term, autoescape=True),
        QueueItem.payload.icontains(term, autoescape=True),
    )


def _fulltext_clause(term: str):
    document = func.concat_ws(
        " ",
        QueueItem.target,
        QueueItem.business_key,
        QueueItem.metadata_raw,
        QueueItem.payload,
    )
    return func.to_tsvector(_SEARCH_CONFIG, document).op("@@")(func.plainto_tsquery(_SEARCH_CONFIG, term))


async def search_items(
    *,
    session: AsyncSession,
    term: str,
    status: str | None = None,
    kind: str | None = None,
    created_after: datetime | None = None,
    created_before: datetime | None = None,
    limit: int = 50,
) -> list[QueueItem]:
    """Free-text search over recipient, business key, metadata and payload.

    Postgres full-text matching is tried first; any failure there, or a dialect
    without it, degrades to case-insensitive substring matching.
    """
    term = (term or "").strip()
    if not term:
        raise QueueValidationError("search term is required")
    base = _apply_filters(
        select(QueueItem),
        status=status,
        kind=kind,
        created_after=created_after,
        created_before=created_before,
    ).order_by(QueueItem.created_at.desc(), QueueItem.id.desc()).limit(_bounded_limit(limit))

    if get_settings().queue_search_fulltext and is_postgres(session):
        try:
            rows = (
                await session.execute(
                    base.where(_fulltext_clause(term)).execution_options(populate_existing=True)
                )
            ).scalars().all()
            return list(rows)
        except SQLAlchemyError:
            await session.rollback()
            logger.warning("queue_search_fulltext_failed falling_back=substring", exc_info=True)

    rows = (
        await session.execute(base.where(_substring_clause(term)).execution_options(populate_existing=True))
    ).scalars().all()
    return list(rows)


async def get_queue_stats(*, session: AsyncSession) -> QueueStats:
    # One grouped count; statuses with no rows report zero.
    counts = {status: 0 for status in QUEUE_STATUSES}
    rows = (
        await session.execute(select(QueueItem.status, func.count()).group_by(QueueItem.status))
    ).all()
    for status, count in rows:
        if status in counts:
            counts[status] = int(count)
    for status, count in counts.items():
        set_gauge(f"queue_depth_{status}", count)
    return QueueStats(
        pending=counts["pending"],
        processing=counts["processing"],
        sent=counts["sent"],
        failed=counts["failed"],
        cancelled=counts["cancelled"],
        total=sum(counts.values()),
    )


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def item_payload(row: QueueItem) -> dict[str, Any]:
    # Admin view of one row; metadata is redacted and unreadable documents are flagged, not raised.
    metadata, corrupt = decode_metadata(row.metadata_raw)
    try:
        payload = decode_payload(row.payload)
    except ValueError:
        payload = {}
    return {
        "id": row.id,
        "kind": row.kind,
        "target": row.target,
        "subject": payload.get("subject"),
        "payload": sanitize_metadata(payload),
        "metadata": sanitize_metadata(metadata),
        "metadata_quarantined": bool(row.metadata_quarantined or corrupt),
        "business_key": row.business_key,
        "discriminator": row.discriminator,
        "priority": row.priority,
        "status": row.status,
        "retry_count": row.retry_count,
        "max_retries": row.max_retries,
        "owner_id": row.owner_id,
        "error_message": row.error_message,
        "scheduled_at": _iso(row.scheduled_at),
        "next_retry_at": _iso(row.next_retry_at),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
        "sent_at": _iso(row.sent_at),
    }
