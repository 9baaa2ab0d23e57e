from __future__ import annotations

from courier.core.config import get_settings
from courier.core.errors import SenderConfigError
from courier.domain.queue import KIND_GENERIC_JOB
from courier.services.senders.base import Delivery, NoopSender, OutboundMessage, Sender
from courier.services.senders.fake import FakeSender
from courier.services.senders.jobs import JobSender
from courier.services.senders.smtp import build_smtp_sender


class KindRoutingSender:
    """Send generic jobs to their handlers and everything else to the mail sender."""

    def __init__(self, notification_sender: Sender, job_sender: Sender | None = None) -> None:
        self._notification_sender = notification_sender
        self._job_sender = job_sender or JobSender()

    @property
    def notification_sender(self) -> Sender:
        return self._notification_sender

    async def send(self, delivery: Delivery) -> None:
        if delivery.kind == KIND_GENERIC_JOB:
            await self._job_sender.send(delivery)
            return
        await self._notification_sender.send(delivery)

    async def send_message(self, message: OutboundMessage) -> None:
        send_message = getattr(self._notification_sender, "send_message", None)
        if send_message is None:
            raise SenderConfigError("notification sender cannot send direct messages")
        await send_message(message)


async def get_notification_sender():
    settings = get_settings()
    backend = (settings.sender_backend or "smtp").lower()

    if backend == "smtp":
        return await build_smtp_sender()
    if backend == "fake":
        return FakeSender()
    if backend == "noop":
        return NoopSender()

    raise SenderConfigError(f"Unsupported sender backend: {backend}")


async def get_sender() -> KindRoutingSender:
    return KindRoutingSender(await get_notification_sender())
