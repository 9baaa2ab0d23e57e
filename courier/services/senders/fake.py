from __future__ import annotations

from courier.core.errors import DeliveryError
from courier.services.senders.base import Delivery, OutboundMessage


class FakeSender:
    def __init__(self, *, fail_times: int = 0, fail_targets: set[str] | None = None) -> None:
        # Deterministic in-memory transport for local development and tests.
        self.deliveries: list[Delivery] = []
        self.messages: list[OutboundMessage] = []
        self._fail_times = max(0, int(fail_times))
        self._fail_targets = set(fail_targets or ())
        self.attempts = 0

    def fail_next(self, times: int = 1) -> None:
        self._fail_times += max(0, int(times))

    async def send(self, delivery: Delivery) -> None:
        self.attempts += 1
        if delivery.target in self._fail_targets:
            raise DeliveryError(f"fake transport rejected {delivery.target}")
        if self._fail_times > 0:
            self._fail_times -= 1
            raise DeliveryError("fake transport failure")
        self.deliveries.append(delivery)

    async def send_message(self, message: OutboundMessage) -> None:
        self.messages.append(message)
