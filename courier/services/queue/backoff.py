from __future__ import annotations

import hashlib
from datetime import datetime, timedelta

from courier.core.config import get_settings


_JITTER_BUCKETS = 10_000


def jitter_factor(*, item_id: str, retry_count: int) -> float:
    # Hash-derived jitter is stable per item and attempt yet spreads retries across items.
    ratio = max(0.0, float(get_settings().queue_backoff_jitter_ratio))
    digest = hashlib.sha256(f"{item_id}:{retry_count}".encode("utf-8")).hexdigest()
    unit = (int(digest[:8], 16) % (_JITTER_BUCKETS + 1)) / _JITTER_BUCKETS
    return 1.0 - ratio + (2.0 * ratio * unit)


def compute_backoff_seconds(retry_count: int, *, item_id: str) -> float:
    # Index by the retry count before increment and cap at the last step.
    settings = get_settings()
    schedule = [max(0, int(step)) for step in settings.queue_backoff_schedule_s] or [60]
    index = min(max(0, int(retry_count)), len(schedule) - 1)
    delay = schedule[index] * jitter_factor(item_id=item_id, retry_count=retry_count)
    return max(float(settings.queue_backoff_floor_s), delay)


def next_retry_time(*, now: datetime, retry_count: int, item_id: str) -> datetime:
    return now + timedelta(seconds=compute_backoff_seconds(retry_count, item_id=item_id))


def max_backoff_seconds() -> float:
    settings = get_settings()
    schedule = [max(0, int(step)) for step in settings.queue_backoff_schedule_s] or [60]
    ratio = max(0.0, float(settings.queue_backoff_jitter_ratio))
    return max(float(settings.queue_backoff_floor_s), schedule[-1] * (1.0 + ratio))
