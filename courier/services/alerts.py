from __future__ import annotations

import logging
from typing import Protocol

from courier.core.config import get_settings
from courier.domain.models import QueueItem
from courier.services.senders.base import MessageSender, OutboundMessage
from courier.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class OperatorNotifier(Protocol):
    async def notify_exhausted(self, item: QueueItem) -> None:
        ...


class LoggingOperatorNotifier:
    async def notify_exhausted(self, item: QueueItem) -> None:
        increment_counter("queue_item_exhausted_total")
        logger.error(
            "queue_item_exhausted item_id=%s kind=%s retry_count=%s error=%s",
            item.id,
            item.kind,
            item.retry_count,
            item.error_message,
        )


class SenderOperatorNotifier:
    """Mail the operator once per exhausted item.

    The alert is sent directly and never queued, so a broken transport cannot
    create alert items that themselves exhaust and alert again.
    """

    def __init__(self, sender: MessageSender, operator_email: str) -> None:
        self._sender = sender
        self._operator_email = operator_email
        self._fallback = LoggingOperatorNotifier()

    async def notify_exhausted(self, item: QueueItem) -> None:
        await self._fallback.notify_exhausted(item)
        message = OutboundMessage(
            to=self._operator_email,
            subject=f"Delivery failed permanently: {item.kind} {item.id}",
            text=(
                f"Queue item {item.id} ({item.kind}) failed after {item.retry_count} attempts.\n"
                f"Last error: {item.error_message or 'unknown'}\n"
            ),
        )
        try:
            await self._sender.send_message(message)
        except Exception:  # noqa: BLE001 - operator alerts are best-effort and must not requeue.
            logger.warning("queue_operator_alert_failed item_id=%s", item.id, exc_info=True)


async def safe_notify_exhausted(notifier: OperatorNotifier | None, item: QueueItem) -> None:
    if notifier is None:
        return
    try:
        await notifier.notify_exhausted(item)
    except Exception:  # noqa: BLE001 - a failing notifier must not undo the terminal transition.
        logger.warning("queue_operator_notifier_failed item_id=%s", item.id, exc_info=True)


def get_operator_notifier(sender: MessageSender | None = None) -> OperatorNotifier:
    settings = get_settings()
    if sender is not None and settings.operator_email:
        return SenderOperatorNotifier(sender, settings.operator_email)
    return LoggingOperatorNotifier()
