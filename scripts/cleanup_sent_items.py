from __future__ import annotations

import argparse
import asyncio

from courier.core.logging import configure_logging
from courier.persistence.db import SessionLocal
from courier.services.queue.cancel import cleanup_sent_items


async def prune(days_old: int | None) -> None:
    configure_logging()
    async with SessionLocal() as session:
        deleted = await cleanup_sent_items(session=session, days_old=days_old)
        print(f"pruned_sent_items={deleted}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Delete delivered queue items past retention.")
    parser.add_argument("--days", type=int, default=None, help="override QUEUE_SENT_RETENTION_DAYS")
    args = parser.parse_args()
    asyncio.run(prune(args.days))
