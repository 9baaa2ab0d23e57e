from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from courier.core.config import get_settings
from courier.core.logging import configure_logging
from courier.persistence.db import engine
from courier.services.senders.smtp import reset_smtp_transport
from courier.services.worker import (
    reset_dispatcher,
    run_cleanup_cycle,
    run_delivery_cycle,
    run_reaper_cycle,
)

logger = logging.getLogger(__name__)

_EVERY_FIVE_MINUTES = set(range(0, 60, 5))


async def dispatch_due_items(ctx) -> dict:
    # Drain one batch of due items per tick; retries and delayed sends ride the same pass.
    return await run_delivery_cycle()


async def dispatch_critical_items(ctx) -> dict:
    # Critical kinds get an extra pass so status changes are not stuck behind bulk mail.
    return await run_delivery_cycle(critical_only=True)


async def reap_stuck(ctx) -> dict:
    return await run_reaper_cycle()


async def prune_sent_items(ctx) -> dict:
    return await run_cleanup_cycle()


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("delivery worker started")


async def _shutdown(ctx) -> None:
    # Drop cached connections so the next loop never reuses sockets bound to this one.
    reset_dispatcher()
    await reset_smtp_transport()
    await engine.dispose()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.queue_worker_queue_name
    functions = [dispatch_due_items, dispatch_critical_items, reap_stuck, prune_sent_items]
    cron_jobs = [
        cron(dispatch_due_items, second=0, unique=True),
        cron(dispatch_critical_items, second=30, unique=True),
        cron(reap_stuck, minute=_EVERY_FIVE_MINUTES, second=15, unique=True),
        cron(prune_sent_items, hour=3, minute=0, second=45, unique=True),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
