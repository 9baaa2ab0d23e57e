from __future__ import annotations


class CourierError(Exception):
    """Base error for courier."""


class QueueValidationError(CourierError):
    """Enqueue request rejected before anything was stored."""


class PayloadTooLargeError(QueueValidationError):
    """Serialized payload and metadata exceed the configured ceiling."""


class QueueItemNotFoundError(CourierError):
    """No queue item exists with the requested id."""


class QueueStateError(CourierError):
    """Queue item is in a state that does not allow the requested operation."""


class SenderConfigError(CourierError):
    """Missing or invalid sender configuration."""


class DeliveryError(CourierError):
    """Delivery attempt failed and should be retried."""


class UnknownJobTypeError(DeliveryError):
    """No handler is registered for a generic job type."""
