from courier.services.queue.cancel import cancel_item, cleanup_sent_items, delete_item
from courier.services.queue.claim import claim_item, claim_items, default_owner_id
from courier.services.queue.dispatcher import DeliveryDispatcher
from courier.services.queue.enqueue import enqueue_item, enqueue_item_detailed, enqueue_job, enqueue_rendered
from courier.services.queue.rate_limit import RateLimiter, TokenBucket
from courier.services.queue.reaper import reap_stuck_items
from courier.services.queue.store import get_item, get_queue_stats, list_items, search_items
from courier.services.queue.transitions import mark_sent, release_items, schedule_retry

__all__ = [
    "DeliveryDispatcher",
    "RateLimiter",
    "TokenBucket",
    "cancel_item",
    "claim_item",
    "claim_items",
    "cleanup_sent_items",
    "default_owner_id",
    "delete_item",
    "enqueue_item",
    "enqueue_item_detailed",
    "enqueue_job",
    "enqueue_rendered",
    "get_item",
    "get_queue_stats",
    "list_items",
    "mark_sent",
    "reap_stuck_items",
    "release_items",
    "schedule_retry",
    "search_items",
]
