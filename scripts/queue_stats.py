from __future__ import annotations

import asyncio
import json

from courier.persistence.db import SessionLocal
from courier.services.queue.store import get_queue_stats


async def report() -> None:
    async with SessionLocal() as session:
        stats = await get_queue_stats(session=session)
        print(json.dumps(dict(stats), sort_keys=True))


if __name__ == "__main__":
    asyncio.run(report())
