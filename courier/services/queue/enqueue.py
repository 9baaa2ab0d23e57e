from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from courier.core.clock import as_utc, utc_now
from courier.core.config import get_settings
from courier.core.errors import QueueValidationError
from courier.domain.models import QueueItem
from courier.domain.queue import (
    EVENT_ENQUEUED,
    KIND_GENERIC_JOB,
    PRIORITY_CRITICAL,
    PRIORITY_NORMAL,
    QUEUE_KINDS,
    STATUS_PENDING,
    ContentProvider,
    EnqueueOptions,
    EnqueueResult,
    NotificationContent,
)
from courier.services.broadcast import Broadcaster, safe_broadcast
from courier.services.queue.backoff import next_retry_time
from courier.services.queue.codec import encode_document, enforce_size_limit, well_known_keys
from courier.services.queue.dedupe import find_duplicate
from courier.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _default_max_retries(kind: str) -> int:
    settings = get_settings()
    if kind == KIND_GENERIC_JOB:
        return int(settings.queue_job_max_retries)
    return int(settings.queue_default_max_retries)


def _resolve_priority(kind: str, options: EnqueueOptions) -> int:
    if options.priority is not None:
        return int(options.priority)
    return PRIORITY_CRITICAL if kind in get_settings().critical_kinds() else PRIORITY_NORMAL


def _normalize_payload(payload: Mapping[str, Any] | NotificationContent) -> Mapping[str, Any]:
    if isinstance(payload, NotificationContent):
        return payload.to_payload()
    if not isinstance(payload, Mapping):
        raise QueueValidationError("payload must be a mapping")
    return payload


async def enqueue_item_detailed(
    *,
    session: AsyncSession,
    kind: str,
    target: str,
    payload: Mapping[str, Any] | NotificationContent,
    metadata: Mapping[str, Any] | None = None,
    options: EnqueueOptions | None = None,
    broadcaster: Broadcaster | None = None,
    now: datetime | None = None,
) -> EnqueueResult:
    """Durably queue one item.

    When ``metadata`` carries a ``businessKey`` and an equivalent item is still
    pending or processing inside the dedup window, that item's id is returned with
    ``created=False`` and nothing is inserted.
    """
    options = options or EnqueueOptions()
    if kind not in QUEUE_KINDS:
        raise QueueValidationError(f"Unknown queue kind '{kind}'")
    target = (target or "").strip()
    if not target:
        raise QueueValidationError("target is required")
    if metadata is not None and not isinstance(metadata, Mapping):
        raise QueueValidationError("metadata must be a mapping")
    max_retries = options.max_retries if options.max_retries is not None else _default_max_retries(kind)
    # Claims require retry_count < max_retries, so zero would leave the item pending forever.
    if int(max_retries) < 1:
        raise QueueValidationError("max_retries must be >= 1")

    payload_json = encode_document(_normalize_payload(payload), field="payload")
    metadata_json = encode_document(metadata, field="metadata") if metadata is not None else None
    enforce_size_limit(payload_json=payload_json, metadata_json=metadata_json)
    business_key, discriminator = well_known_keys(metadata)

    current = as_utc(now) or utc_now()
    if not options.skip_dedup and business_key:
        existing_id = await find_duplicate(
            session=session,
            kind=kind,
            target=target,
            business_key=business_key,
            discriminator=discriminator,
            now=current,
        )
        if existing_id is not None:
            increment_counter("queue_enqueue_deduplicated_total")
            logger.info(
                "queue_enqueue_deduplicated kind=%s business_key=%s existing_id=%s",
                kind,
                business_key,
                existing_id,
            )
            return EnqueueResult(item_id=existing_id, created=False)

    item_id = uuid4().hex
    scheduled_at = as_utc(options.scheduled_at)
    if scheduled_at is not None:
        next_retry_at = scheduled_at
    else:
        # New items wait one jittered backoff step so the request path can attempt delivery first.
        scheduled_at = current
        next_retry_at = next_retry_time(now=current, retry_count=0, item_id=item_id)

    row = QueueItem(
        id=item_id,
        kind=kind,
        target=target,
        payload=payload_json,
        metadata_raw=metadata_json,
        business_key=business_key,
        discriminator=discriminator,
        priority=_resolve_priority(kind, options),
        status=STATUS_PENDING,
        retry_count=0,
        max_retries=int(max_retries),
        scheduled_at=scheduled_at,
        next_retry_at=next_retry_at,
        owner_id=None,
        error_message=None,
        metadata_quarantined=False,
        created_at=current,
        updated_at=current,
        sent_at=None,
    )
    session.add(row)
    await session.commit()
    increment_counter("queue_enqueued_total")
    logger.info("queue_item_enqueued item_id=%s kind=%s priority=%s", item_id, kind, row.priority)
    await safe_broadcast(broadcaster, EVENT_ENQUEUED, row)
    return EnqueueResult(item_id=item_id, created=True)


async def enqueue_item(
    *,
    session: AsyncSession,
    kind: str,
    target: str,
    payload: Mapping[str, Any] | NotificationContent,
    metadata: Mapping[str, Any] | None = None,
    options: EnqueueOptions | None = None,
    broadcaster: Broadcaster | None = None,
    now: datetime | None = None,
) -> str:
    # Callers that only need the id; duplicates resolve to the existing item.
    result = await enqueue_item_detailed(
        session=session,
        kind=kind,
        target=target,
        payload=payload,
        metadata=metadata,
        options=options,
        broadcaster=broadcaster,
        now=now,
    )
    return result.item_id


async def enqueue_job(
    *,
    session: AsyncSession,
    job_type: str,
    args: Mapping[str, Any] | None = None,
    metadata: Mapping[str, Any] | None = None,
    max_retries: int | None = None,
    priority: int | None = None,
    scheduled_at: datetime | None = None,
    broadcaster: Broadcaster | None = None,
    now: datetime | None = None,
) -> str:
    # Generic jobs are claimable immediately unless explicitly scheduled.
    current = as_utc(now) or utc_now()
    options = EnqueueOptions(
        max_retries=max_retries,
        scheduled_at=scheduled_at or current,
        skip_dedup=False,
        priority=priority,
    )
    return await enqueue_item(
        session=session,
        kind=KIND_GENERIC_JOB,
        target=job_type,
        payload={"args": dict(args or {})},
        metadata=metadata,
        options=options,
        broadcaster=broadcaster,
        now=current,
    )


async def enqueue_rendered(
    *,
    session: AsyncSession,
    kind: str,
    target: str,
    provider: ContentProvider,
    context: Mapping[str, Any],
    metadata: Mapping[str, Any] | None = None,
    options: EnqueueOptions | None = None,
    broadcaster: Broadcaster | None = None,
    now: datetime | None = None,
) -> str:
    # Content is rendered once at enqueue; retries resend the stored payload unchanged.
    content = provider.render(kind, context)
    if not isinstance(content, NotificationContent):
        raise QueueValidationError("content provider must return NotificationContent")
    return await enqueue_item(
        session=session,
        kind=kind,
        target=target,
        payload=content,
        metadata=metadata,
        options=options,
        broadcaster=broadcaster,
        now=now,
    )
