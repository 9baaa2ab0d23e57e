from __future__ import annotations

import asyncio

from courier.core.logging import configure_logging
from courier.services.worker import run_reaper_cycle


async def _main() -> None:
    # One-off recovery pass for operators after a worker crash.
    configure_logging()
    result = await run_reaper_cycle()
    print(f"reset_stuck_items={result.get('reset', 0)}")


if __name__ == "__main__":
    asyncio.run(_main())
