from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courier.core.config import get_settings
from courier.persistence.db import SessionLocal
from courier.services.alerts import get_operator_notifier
from courier.services.broadcast import get_broadcaster
from courier.services.queue.cancel import cleanup_sent_items
from courier.services.queue.dispatcher import DeliveryDispatcher
from courier.services.queue.rate_limit import RateLimiter
from courier.services.queue.reaper import reap_stuck_items
from courier.services.queue.store import get_queue_stats
from courier.services.senders.factory import get_sender


logger = logging.getLogger(__name__)

_dispatcher: DeliveryDispatcher | None = None
_dispatcher_loop = None
_dispatcher_lock = asyncio.Lock()


def _is_missing_table_error(exc: Exception) -> bool:
    # Allow workers to start before migrations by treating missing-table errors as a degraded state.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


async def build_dispatcher(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> DeliveryDispatcher:
    factory = session_factory or SessionLocal
    sender = await get_sender()
    return DeliveryDispatcher(
        factory,
        sender,
        rate_limiter=RateLimiter(factory),
        broadcaster=get_broadcaster(),
        notifier=get_operator_notifier(sender),
    )


async def get_dispatcher() -> DeliveryDispatcher:
    # One dispatcher per process and loop keeps the rate-limit bucket and owner id stable.
    global _dispatcher, _dispatcher_loop
    current_loop = asyncio.get_running_loop()
    if _dispatcher is not None and _dispatcher_loop == current_loop:
        return _dispatcher
    async with _dispatcher_lock:
        if _dispatcher is None or _dispatcher_loop != current_loop:
            _dispatcher = await build_dispatcher()
            _dispatcher_loop = current_loop
    return _dispatcher


def reset_dispatcher() -> None:
    global _dispatcher, _dispatcher_loop
    _dispatcher = None
    _dispatcher_loop = None


async def run_delivery_cycle(
    *,
    limit: int | None = None,
    critical_only: bool = False,
    dispatcher: DeliveryDispatcher | None = None,
) -> dict[str, Any]:
    # Drain due items in one bounded batch; callers schedule the cadence.
    active = dispatcher or await get_dispatcher()
    try:
        if critical_only:
            summary = await active.run_critical_cycle(limit=limit)
        else:
            summary = await active.run_cycle(limit=limit)
    except SQLAlchemyError as exc:
        if _is_missing_table_error(exc):
            return {"status": "waiting_for_migrations", "claimed": 0, "sent": 0, "queued": 0, "failed": 0}
        raise
    return {"status": "ok", **summary.as_dict()}


async def run_reaper_cycle(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    factory = session_factory or SessionLocal
    try:
        async with factory() as session:
            reset = await reap_stuck_items(session=session)
            stats = await get_queue_stats(session=session)
    except SQLAlchemyError as exc:
        if _is_missing_table_error(exc):
            return {"status": "waiting_for_migrations", "reset": 0}
        raise
    return {"status": "ok", "reset": reset, "stats": dict(stats)}


async def run_cleanup_cycle(
    *,
    days_old: int | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    factory = session_factory or SessionLocal
    async with factory() as session:
        deleted = await cleanup_sent_items(session=session, days_old=days_old)
    return {"status": "ok", "deleted": deleted}


async def run_delivery_loop() -> None:
    # Poll continuously so retries and delayed items go out even when request traffic is idle.
    settings = get_settings()
    interval = max(1, int(settings.queue_worker_poll_interval_s))
    while True:
        try:
            await run_delivery_cycle()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("delivery cycle failed")
        await asyncio.sleep(interval)


async def run_reaper_loop() -> None:
    interval = max(5, int(get_settings().queue_reaper_interval_s))
    while True:
        try:
            await run_reaper_cycle()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("stuck item reaper cycle failed")
        await asyncio.sleep(interval)
