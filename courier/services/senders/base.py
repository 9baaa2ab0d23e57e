from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class Delivery:
    # Decoded view of one claimed queue item handed to a sender.
    item_id: str
    kind: str
    target: str
    payload: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)
    attempt: int = 1


@dataclass(frozen=True)
class OutboundMessage:
    to: str
    subject: str
    text: str | None = None
    html: str | None = None
    reply_to: str | None = None


class Sender(Protocol):
    async def send(self, delivery: Delivery) -> None:
        ...


class MessageSender(Protocol):
    async def send_message(self, message: OutboundMessage) -> None:
        ...


def message_from_delivery(delivery: Delivery) -> OutboundMessage:
    # Reply-to may come from the rendered payload or, for older rows, from metadata.
    payload = delivery.payload
    reply_to = payload.get("replyTo") or delivery.metadata.get("replyTo")
    return OutboundMessage(
        to=delivery.target,
        subject=str(payload.get("subject") or ""),
        text=payload.get("text"),
        html=payload.get("html"),
        reply_to=str(reply_to) if reply_to else None,
    )


class NoopSender:
    async def send(self, delivery: Delivery) -> None:
        return None

    async def send_message(self, message: OutboundMessage) -> None:
        return None
