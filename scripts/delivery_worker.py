from __future__ import annotations

import asyncio

from courier.core.logging import configure_logging
from courier.services.worker import run_delivery_loop, run_reaper_loop


async def _main() -> None:
    # Long-running deployments poll for due items and sweep stuck rows on separate cadences.
    configure_logging()
    await asyncio.gather(run_delivery_loop(), run_reaper_loop())


if __name__ == "__main__":
    asyncio.run(_main())
