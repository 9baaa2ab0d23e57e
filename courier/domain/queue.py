from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Protocol, TypedDict


STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

QUEUE_STATUSES = (
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_SENT,
    STATUS_FAILED,
    STATUS_CANCELLED,
)
# Items still awaiting a delivery attempt; the only ones dedup collapses onto.
LIVE_STATUSES = (STATUS_PENDING, STATUS_PROCESSING)

KIND_ADMIN_NOTIFICATION = "admin_notification"
KIND_USER_CONFIRMATION = "user_confirmation"
KIND_STATUS_CHANGE = "status_change"
KIND_USER_RESPONSE = "user_response"
KIND_AUTO_UPDATE = "auto_update"
KIND_GENERIC_JOB = "generic_job"

NOTIFICATION_KINDS = (
    KIND_ADMIN_NOTIFICATION,
    KIND_USER_CONFIRMATION,
    KIND_STATUS_CHANGE,
    KIND_USER_RESPONSE,
    KIND_AUTO_UPDATE,
)
QUEUE_KINDS = NOTIFICATION_KINDS + (KIND_GENERIC_JOB,)

PRIORITY_CRITICAL = 10
PRIORITY_NORMAL = 0

# Well-known metadata keys read by the queue; everything else is opaque.
METADATA_BUSINESS_KEY = "businessKey"
METADATA_DISCRIMINATOR = "discriminator"
METADATA_LEGACY_DISCRIMINATOR = "status"

EVENT_ENQUEUED = "queue.item.enqueued"
EVENT_SENT = "queue.item.sent"
EVENT_RETRY_SCHEDULED = "queue.item.retry_scheduled"
EVENT_FAILED = "queue.item.failed"
EVENT_CANCELLED = "queue.item.cancelled"


class DispatchOutcome(str, Enum):
    DELIVERED = "delivered"
    QUEUED = "queued"
    FAILED = "failed"


class QueueStats(TypedDict):
    pending: int
    processing: int
    sent: int
    failed: int
    cancelled: int
    total: int


@dataclass(frozen=True)
class NotificationContent:
    # Rendered message produced by a content provider at enqueue time.
    subject: str
    html: str | None = None
    text: str | None = None
    reply_to: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"subject": self.subject}
        if self.html is not None:
            payload["html"] = self.html
        if self.text is not None:
            payload["text"] = self.text
        if self.reply_to is not None:
            payload["replyTo"] = self.reply_to
        return payload


class ContentProvider(Protocol):
    # Renders subject and bodies for one notification kind from caller-supplied context.
    def render(self, kind: str, context: Mapping[str, Any]) -> NotificationContent:
        ...


@dataclass(frozen=True)
class EnqueueOptions:
    max_retries: int | None = None
    scheduled_at: datetime | None = None
    skip_dedup: bool = False
    # Explicit override; otherwise derived from the critical-kind set.
    priority: int | None = None


@dataclass(frozen=True)
class EnqueueResult:
    item_id: str
    # False when an equivalent live item absorbed the request.
    created: bool


@dataclass(frozen=True)
class CancelResult:
    success: bool
    message: str
    status: str | None = None


@dataclass(frozen=True)
class RetryDecision:
    applied: bool
    status: str | None = None
    retry_count: int | None = None
    next_retry_at: datetime | None = None


@dataclass(frozen=True)
class DispatchResult:
    item_id: str
    outcome: DispatchOutcome
    error: str | None = None


@dataclass
class DispatchSummary:
    claimed: int = 0
    sent: int = 0
    queued: int = 0
    failed: int = 0
    deferred: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "claimed": self.claimed,
            "sent": self.sent,
            "queued": self.queued,
            "failed": self.failed,
            "deferred": self.deferred,
            "errors": list(self.errors),
        }
