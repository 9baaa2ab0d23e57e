from __future__ import annotations

import aiosmtplib
import pytest

from courier.core.errors import DeliveryError, SenderConfigError
from courier.services.senders.base import Delivery, OutboundMessage, message_from_delivery
from courier.services.senders.smtp import SmtpSender, SmtpTransport, is_connection_error
from courier.services.telemetry import counters_snapshot


class _FakeClient:
    def __init__(self, owner: "_ClientFactory", **kwargs) -> None:
        self.kwargs = kwargs
        self.is_connected = False
        self.sent = []
        self.quit_called = False
        self._owner = owner

    async def connect(self) -> None:
        self.is_connected = True

    async def noop(self) -> None:
        return None

    async def send_message(self, message) -> None:  # noqa: ANN001
        if self._owner.errors:
            error = self._owner.errors.pop(0)
            if isinstance(error, aiosmtplib.SMTPServerDisconnected):
                self.is_connected = False
            raise error
        self.sent.append(message)

    async def quit(self) -> None:
        self.quit_called = True
        self.is_connected = False


class _ClientFactory:
    def __init__(self, errors: list[Exception] | None = None) -> None:
        self.clients: list[_FakeClient] = []
        self.errors = list(errors or [])

    def __call__(self, **kwargs) -> _FakeClient:
        client = _FakeClient(self, **kwargs)
        self.clients.append(client)
        return client


def _sender(factory: _ClientFactory, *, use_tls: bool = False) -> SmtpSender:
    transport = SmtpTransport(
        host="smtp.example.com",
        port=465 if use_tls else 587,
        use_tls=use_tls,
        username="bookings@example.com",
        password="app-password",
        client_factory=factory,
    )
    return SmtpSender(transport, from_address="bookings@example.com", from_name="Reservations")


def _message(**overrides) -> OutboundMessage:
    values = {"to": "guest@example.com", "subject": "Booked", "text": "See you soon", "html": "<p>See you soon</p>"}
    values.update(overrides)
    return OutboundMessage(**values)


@pytest.mark.asyncio
async def test_transport_connects_lazily_and_reuses_connection() -> None:
    factory = _ClientFactory()
    sender = _sender(factory)
    assert factory.clients == []

    await sender.send_message(_message())
    await sender.send_message(_message(to="other@example.com"))

    assert len(factory.clients) == 1
    client = factory.clients[0]
    assert len(client.sent) == 2
    assert client.kwargs["hostname"] == "smtp.example.com"
    assert client.kwargs["start_tls"] is None
    assert client.kwargs["use_tls"] is False


@pytest.mark.asyncio
async def test_implicit_tls_disables_starttls() -> None:
    factory = _ClientFactory()
    await _sender(factory, use_tls=True).send_message(_message())
    assert factory.clients[0].kwargs["use_tls"] is True
    assert factory.clients[0].kwargs["start_tls"] is False


@pytest.mark.asyncio
async def test_connection_errors_reset_the_cached_connection() -> None:
    factory = _ClientFactory(errors=[aiosmtplib.SMTPServerDisconnected("server went away")])
    sender = _sender(factory)

    with pytest.raises(aiosmtplib.SMTPServerDisconnected):
        await sender.send_message(_message())
    await sender.send_message(_message())

    assert len(factory.clients) == 2
    assert factory.clients[0].quit_called is True
    assert len(factory.clients[1].sent) == 1
    assert counters_snapshot()["smtp_transport_reset_total"] == 1


@pytest.mark.asyncio
async def test_recipient_errors_keep_the_connection() -> None:
    factory = _ClientFactory(errors=[aiosmtplib.SMTPResponseException(550, "mailbox unavailable")])
    sender = _sender(factory)

    with pytest.raises(aiosmtplib.SMTPResponseException):
        await sender.send_message(_message())
    await sender.send_message(_message())

    assert len(factory.clients) == 1
    assert "smtp_transport_reset_total" not in counters_snapshot()


def test_connection_error_classification() -> None:
    assert is_connection_error(aiosmtplib.SMTPServerDisconnected("gone"))
    assert is_connection_error(aiosmtplib.SMTPResponseException(421, "closing channel"))
    assert is_connection_error(ConnectionResetError())
    assert not is_connection_error(aiosmtplib.SMTPResponseException(550, "no such user"))
    assert not is_connection_error(ValueError("bad"))


def test_build_message_carries_both_bodies_and_reply_to() -> None:
    sender = _sender(_ClientFactory())
    email = sender.build_message(_message(reply_to="desk@example.com"))

    assert email["From"] == "Reservations <bookings@example.com>"
    assert email["To"] == "guest@example.com"
    assert email["Reply-To"] == "desk@example.com"
    assert email.get_content_type() == "multipart/alternative"
    assert email.get_body(preferencelist=("plain",)).get_content().strip() == "See you soon"
    assert "<p>See you soon</p>" in email.get_body(preferencelist=("html",)).get_content()


def test_build_message_rejects_empty_messages() -> None:
    sender = _sender(_ClientFactory())
    with pytest.raises(DeliveryError):
        sender.build_message(_message(subject=""))
    with pytest.raises(DeliveryError):
        sender.build_message(_message(text=None, html=None))


def test_sender_requires_from_address() -> None:
    transport = SmtpTransport(host="smtp.example.com", port=587, client_factory=_ClientFactory())
    with pytest.raises(SenderConfigError):
        SmtpSender(transport, from_address="")


def test_message_from_delivery_falls_back_to_metadata_reply_to() -> None:
    delivery = Delivery(
        item_id="item-1",
        kind="admin_notification",
        target="ops@example.com",
        payload={"subject": "New booking", "html": "<p>New</p>"},
        metadata={"replyTo": "guest@example.com"},
    )
    message = message_from_delivery(delivery)
    assert message.to == "ops@example.com"
    assert message.reply_to == "guest@example.com"
    assert message.text is None
