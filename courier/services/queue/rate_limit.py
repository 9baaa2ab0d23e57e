from __future__ import annotations

import asyncio
import logging
import math
import time
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courier.core.clock import as_utc, utc_now
from courier.core.config import get_settings
from courier.domain.models import QueueItem
from courier.domain.queue import STATUS_SENT
from courier.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_WINDOW_S = 60
_MIN_SLEEP_S = 0.05


class TokenBucket:
    def __init__(
        self,
        capacity: int,
        *,
        refill_per_s: float | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._capacity = max(0, int(capacity))
        self._rate = refill_per_s if refill_per_s is not None else self._capacity / float(_WINDOW_S)
        self._time = time_source or time.monotonic
        self._tokens = float(self._capacity)
        self._last = self._time()

    @property
    def capacity(self) -> int:
        return self._capacity

    def _refill(self) -> None:
        # Refill tokens based on elapsed time while enforcing capacity.
        now = self._time()
        if now < self._last:
            self._last = now
        delta_s = now - self._last
        self._tokens = min(float(self._capacity), self._tokens + (delta_s * self._rate))
        self._last = now

    def available(self) -> float:
        self._refill()
        return self._tokens

    def try_take(self) -> bool:
        self._refill()
        if self._tokens < 1.0:
            return False
        self._tokens -= 1.0
        return True

    def wait_seconds(self) -> float:
        # Time until one whole token is available at the sustained rate.
        tokens = self.available()
        if tokens >= 1.0:
            return 0.0
        if self._rate <= 0:
            return float(_WINDOW_S)
        return math.ceil(((1.0 - tokens) / self._rate) * 1000) / 1000.0


class RateLimiter:
    """Send ceiling over any rolling 60-second window, shared by every worker.

    The in-process bucket smooths bursts from this worker; the count of rows sent
    in the last 60 seconds bounds the fleet. The shared count is approximate when
    workers race, and a window can overshoot by roughly one send per worker.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        capacity: int | None = None,
        *,
        enabled: bool | None = None,
        clock: Callable[[], datetime] | None = None,
        time_source: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._capacity = int(settings.queue_rate_limit_per_minute if capacity is None else capacity)
        self._enabled = settings.queue_rate_limit_enabled if enabled is None else enabled
        self._clock = clock or utc_now
        self._time = time_source or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._bucket = TokenBucket(self._capacity, time_source=self._time)

    @property
    def capacity(self) -> int:
        return self._capacity

    def _now(self) -> datetime:
        return as_utc(self._clock()) or utc_now()

    async def _shared_window(self) -> tuple[int, datetime | None]:
        # Rows sent in the last 60 seconds, and when the send blocking the next one ages out.
        now = self._now()
        recent = (QueueItem.status == STATUS_SENT, QueueItem.sent_at > now - timedelta(seconds=_WINDOW_S))
        async with self._session_factory() as session:
            count = int(await session.scalar(select(func.count()).select_from(QueueItem).where(*recent)) or 0)
            if count < self._capacity:
                return count, None
            blocking = await session.scalar(
                select(QueueItem.sent_at)
                .where(*recent)
                .order_by(QueueItem.sent_at.asc())
                .offset(count - self._capacity)
                .limit(1)
            )
        blocking = as_utc(blocking)
        if blocking is None:
            return count, None
        return count, blocking + timedelta(seconds=_WINDOW_S)

    async def sent_in_window(self) -> int:
        count, _ = await self._shared_window()
        return count

    async def try_acquire(self) -> bool:
        if not self._enabled:
            return True
        # Local check first so an exhausted worker does not hit the database.
        if self._bucket.available() < 1.0:
            return False
        if await self.sent_in_window() >= self._capacity:
            return False
        return self._bucket.try_take()

    async def wait_for_token(self, max_wait_s: float | None = None) -> bool:
        if not self._enabled:
            return True
        budget = get_settings().queue_rate_limit_max_wait_s if max_wait_s is None else max_wait_s
        deadline = self._time() + max(0.0, float(budget))
        while True:
            if await self.try_acquire():
                return True
            remaining = deadline - self._time()
            if remaining <= 0:
                increment_counter("queue_rate_limited_total")
                logger.info("queue_rate_limit_wait_exhausted capacity=%s", self._capacity)
                return False
            # Both checks must pass, so sleep until the later of the two frees up.
            _, released_at = await self._shared_window()
            shared_wait = (released_at - self._now()).total_seconds() if released_at is not None else 0.0
            delay = max(self._bucket.wait_seconds(), shared_wait)
            await self._sleep(min(remaining, max(_MIN_SLEEP_S, delay)))
