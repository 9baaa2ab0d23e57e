from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courier.core.clock import as_utc, utc_now
from courier.core.config import get_settings
from courier.core.errors import QueueItemNotFoundError, QueueStateError
from courier.domain.models import QueueItem
from courier.domain.queue import (
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    STATUS_SENT,
    DispatchOutcome,
    DispatchResult,
    DispatchSummary,
    EnqueueOptions,
    NotificationContent,
)
from courier.services.alerts import OperatorNotifier
from courier.services.broadcast import Broadcaster
from courier.services.queue.claim import claim_item, claim_items, default_owner_id
from courier.services.queue.codec import decode_metadata, decode_payload, sanitize_error_message
from courier.services.queue.enqueue import enqueue_item_detailed
from courier.services.queue.rate_limit import RateLimiter
from courier.services.queue.store import get_item
from courier.services.queue.transitions import (
    mark_sent,
    quarantine_metadata,
    release_items,
    schedule_retry,
)
from courier.services.senders.base import Delivery, Sender


logger = logging.getLogger(__name__)


class DeliveryDispatcher:
    """Claim due items and run each through the sender with isolated failure handling.

    Every attempt ends in exactly one of three outcomes: delivered, queued for a
    later attempt, or failed for good.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sender: Sender,
        *,
        rate_limiter: RateLimiter | None = None,
        broadcaster: Broadcaster | None = None,
        notifier: OperatorNotifier | None = None,
        owner_id: str | None = None,
        batch_size: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._sender = sender
        self._rate_limiter = rate_limiter
        self._broadcaster = broadcaster
        self._notifier = notifier
        self._owner_id = owner_id or default_owner_id()
        self._batch_size = int(batch_size or get_settings().queue_claim_batch_size)

    @property
    def owner_id(self) -> str:
        return self._owner_id

    async def run_cycle(
        self,
        *,
        limit: int | None = None,
        kinds: Iterable[str] | None = None,
        now: datetime | None = None,
    ) -> DispatchSummary:
        summary = DispatchSummary()
        async with self._session_factory() as session:
            items = await claim_items(
                session=session,
                limit=int(limit or self._batch_size),
                owner_id=self._owner_id,
                kinds=kinds,
                now=now,
            )
            summary.claimed = len(items)
            # Detach the batch so a per-item rollback cannot expire rows still waiting their turn.
            session.expunge_all()
            for index, item in enumerate(items):
                if self._rate_limiter is not None and not await self._rate_limiter.wait_for_token():
                    # Out of send budget: hand the rest back untouched for the next cycle.
                    remaining = [row.id for row in items[index:]]
                    await release_items(session=session, item_ids=remaining, owner_id=self._owner_id)
                    summary.deferred += len(remaining)
                    break
                try:
                    result = await self._attempt(session, item)
                except Exception as exc:
                    # One bad item must not sink the batch; the reaper recovers it if left processing.
                    await session.rollback()
                    logger.exception("queue_dispatch_item_failed item_id=%s", item.id)
                    summary.errors.append(f"{item.id}: {sanitize_error_message(exc)}")
                    continue
                _tally(summary, result)
        if summary.claimed:
            logger.info(
                "queue_dispatch_cycle claimed=%s sent=%s queued=%s failed=%s deferred=%s errors=%s",
                summary.claimed,
                summary.sent,
                summary.queued,
                summary.failed,
                summary.deferred,
                len(summary.errors),
            )
        return summary

    async def run_critical_cycle(self, *, limit: int | None = None) -> DispatchSummary:
        # Cron pass for time-sensitive notifications only.
        return await self.run_cycle(limit=limit, kinds=get_settings().critical_kinds())

    async def submit(
        self,
        *,
        kind: str,
        target: str,
        payload: Mapping[str, Any] | NotificationContent,
        metadata: Mapping[str, Any] | None = None,
        options: EnqueueOptions | None = None,
    ) -> DispatchResult:
        """Queue an item durably, then try to deliver it right away.

        Validation errors propagate to the caller. Delivery problems never do: they
        show up as a ``QUEUED`` or ``FAILED`` outcome.
        """
        options = options or EnqueueOptions()
        async with self._session_factory() as session:
            enqueued = await enqueue_item_detailed(
                session=session,
                kind=kind,
                target=target,
                payload=payload,
                metadata=metadata,
                options=options,
                broadcaster=self._broadcaster,
            )
            if not enqueued.created:
                return DispatchResult(item_id=enqueued.item_id, outcome=DispatchOutcome.QUEUED)
            scheduled_at = as_utc(options.scheduled_at)
            if scheduled_at is not None and scheduled_at > utc_now():
                return DispatchResult(item_id=enqueued.item_id, outcome=DispatchOutcome.QUEUED)
            return await self._attempt_now(session, enqueued.item_id, allow_failed=False, wait=False)

    async def retry_item_now(self, item_id: str) -> DispatchResult:
        # Operator-forced attempt; bypasses backoff but never resurrects sent or cancelled items.
        async with self._session_factory() as session:
            row = await get_item(session=session, item_id=item_id)
            if row is None:
                raise QueueItemNotFoundError(f"Queue item '{item_id}' not found")
            if row.status == STATUS_SENT:
                raise QueueStateError("Queue item already sent")
            if row.status == STATUS_CANCELLED:
                raise QueueStateError("Queue item is cancelled")
            if row.status == STATUS_PROCESSING:
                raise QueueStateError("Queue item is currently processing")
            return await self._attempt_now(
                session,
                item_id,
                allow_failed=True,
                wait=True,
                prior_status=row.status,
            )

    async def _attempt_now(
        self,
        session: AsyncSession,
        item_id: str,
        *,
        allow_failed: bool,
        wait: bool,
        prior_status: str | None = None,
    ) -> DispatchResult:
        if self._rate_limiter is not None:
            # Token before claim: a refusal must leave the row in the status it had.
            granted = await (self._rate_limiter.wait_for_token() if wait else self._rate_limiter.try_acquire())
            if not granted:
                outcome = DispatchOutcome.FAILED if prior_status == STATUS_FAILED else DispatchOutcome.QUEUED
                return DispatchResult(item_id=item_id, outcome=outcome, error="rate limited")
        item = await claim_item(
            session=session,
            item_id=item_id,
            owner_id=self._owner_id,
            allow_failed=allow_failed,
        )
        if item is None:
            return DispatchResult(item_id=item_id, outcome=DispatchOutcome.QUEUED)
        session.expunge(item)
        try:
            return await self._attempt(session, item)
        except Exception as exc:
            await session.rollback()
            logger.exception("queue_dispatch_item_failed item_id=%s", item_id)
            return DispatchResult(
                item_id=item_id,
                outcome=DispatchOutcome.QUEUED,
                error=sanitize_error_message(exc),
            )

    async def _attempt(self, session: AsyncSession, item: QueueItem) -> DispatchResult:
        metadata, corrupt = decode_metadata(item.metadata_raw)
        if corrupt and not item.metadata_quarantined:
            await quarantine_metadata(session=session, item_id=item.id)
        try:
            payload = decode_payload(item.payload)
        except ValueError as exc:
            return await self._record_failure(session, item, f"unreadable payload: {exc}")

        delivery = Delivery(
            item_id=item.id,
            kind=item.kind,
            target=item.target,
            payload=payload,
            metadata=metadata,
            attempt=int(item.retry_count) + 1,
        )
        try:
            await self._sender.send(delivery)
        except Exception as exc:
            logger.warning(
                "queue_delivery_attempt_failed item_id=%s kind=%s attempt=%s error=%s",
                item.id,
                item.kind,
                delivery.attempt,
                sanitize_error_message(exc),
            )
            return await self._record_failure(session, item, exc)

        if not await mark_sent(
            session=session,
            item_id=item.id,
            owner_id=self._owner_id,
            broadcaster=self._broadcaster,
        ):
            # Sent, but the row was cancelled or reclaimed meanwhile; the transport already has it.
            logger.warning("queue_sent_after_ownership_lost item_id=%s", item.id)
        return DispatchResult(item_id=item.id, outcome=DispatchOutcome.DELIVERED)

    async def _record_failure(self, session: AsyncSession, item: QueueItem, error: object) -> DispatchResult:
        message = sanitize_error_message(error)
        decision = await schedule_retry(
            session=session,
            item_id=item.id,
            error_message=message,
            owner_id=self._owner_id,
            notifier=self._notifier,
            broadcaster=self._broadcaster,
        )
        if decision.applied and decision.status == STATUS_FAILED:
            return DispatchResult(item_id=item.id, outcome=DispatchOutcome.FAILED, error=message)
        return DispatchResult(item_id=item.id, outcome=DispatchOutcome.QUEUED, error=message)


def _tally(summary: DispatchSummary, result: DispatchResult) -> None:
    if result.outcome is DispatchOutcome.DELIVERED:
        summary.sent += 1
    elif result.outcome is DispatchOutcome.FAILED:
        summary.failed += 1
        if result.error:
            summary.errors.append(f"{result.item_id}: {result.error}")
    else:
        summary.queued += 1
        if result.error:
            summary.errors.append(f"{result.item_id}: {result.error}")
