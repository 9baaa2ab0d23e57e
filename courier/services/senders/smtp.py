from __future__ import annotations

import asyncio
import logging
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Callable

import aiosmtplib

from courier.core.config import get_settings
from courier.core.errors import DeliveryError, SenderConfigError
from courier.services.senders.base import Delivery, OutboundMessage, message_from_delivery
from courier.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_CONNECTION_ERRORS = (
    aiosmtplib.SMTPServerDisconnected,
    aiosmtplib.SMTPConnectError,
    aiosmtplib.SMTPTimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
)
# Service-not-available replies mean the server is dropping this session.
_RECONNECT_CODES = {421}

_smtp_transport: SmtpTransport | None = None
_smtp_transport_loop = None
_smtp_transport_lock = asyncio.Lock()


def is_connection_error(exc: BaseException) -> bool:
    # Classify failures that leave the cached connection unusable and require a reconnect.
    if isinstance(exc, _CONNECTION_ERRORS):
        return True
    if isinstance(exc, aiosmtplib.SMTPResponseException) and int(exc.code) in _RECONNECT_CODES:
        return True
    return False


class SmtpTransport:
    """One verified SMTP connection, opened on first use and reopened after ``reset``."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        use_tls: bool = False,
        username: str | None = None,
        password: str | None = None,
        timeout_s: float = 10.0,
        client_factory: Callable[..., Any] | None = None,
    ) -> None:
        self._host = host
        self._port = int(port)
        self._use_tls = bool(use_tls)
        self._username = username
        self._password = password
        self._timeout_s = float(timeout_s)
        self._client_factory = client_factory or aiosmtplib.SMTP
        self._client: Any = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._client is not None and bool(getattr(self._client, "is_connected", False))

    async def _connect(self) -> Any:
        client = self._client_factory(
            hostname=self._host,
            port=self._port,
            use_tls=self._use_tls,
            # STARTTLS is negotiated when offered unless implicit TLS is already in use.
            start_tls=False if self._use_tls else None,
            username=self._username,
            password=self._password,
            timeout=self._timeout_s,
        )
        await client.connect()
        # Verify the session before caching it so a half-open login is never reused.
        await client.noop()
        logger.info("smtp_transport_connected host=%s port=%s", self._host, self._port)
        return client

    async def send(self, message: EmailMessage) -> None:
        # Hold the lock across the whole SMTP transaction; commands on one session cannot interleave.
        async with self._lock:
            if not self.connected:
                self._client = await self._connect()
            await self._client.send_message(message)

    async def reset(self) -> None:
        async with self._lock:
            client = self._client
            self._client = None
        if client is None:
            return
        increment_counter("smtp_transport_reset_total")
        logger.warning("smtp_transport_reset host=%s port=%s", self._host, self._port)
        try:
            await client.quit()
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            logger.debug("smtp_transport_quit_failed host=%s", self._host, exc_info=True)


async def get_smtp_transport() -> SmtpTransport:
    # Cache the transport per event loop; a connection bound to a closed loop is unusable.
    global _smtp_transport, _smtp_transport_loop
    current_loop = asyncio.get_running_loop()
    if _smtp_transport is not None and _smtp_transport_loop == current_loop:
        return _smtp_transport
    async with _smtp_transport_lock:
        if _smtp_transport is None or _smtp_transport_loop != current_loop:
            settings = get_settings()
            _smtp_transport = SmtpTransport(
                host=settings.smtp_host,
                port=settings.smtp_port,
                use_tls=settings.smtp_secure,
                username=settings.smtp_user,
                password=settings.smtp_password,
                timeout_s=settings.smtp_timeout_s,
            )
            _smtp_transport_loop = current_loop
    return _smtp_transport


async def reset_smtp_transport() -> None:
    global _smtp_transport, _smtp_transport_loop
    transport = _smtp_transport
    _smtp_transport = None
    _smtp_transport_loop = None
    if transport is not None:
        await transport.reset()


class SmtpSender:
    def __init__(self, transport: SmtpTransport, *, from_address: str, from_name: str | None = None) -> None:
        if not from_address:
            raise SenderConfigError("SMTP sender requires a from address (SMTP_FROM_ADDRESS or SMTP_USER)")
        self._transport = transport
        self._from_address = from_address
        self._from_name = from_name

    def build_message(self, message: OutboundMessage) -> EmailMessage:
        if not message.subject:
            raise DeliveryError("message subject is empty")
        if not message.text and not message.html:
            raise DeliveryError("message has no text or html body")
        email = EmailMessage()
        email["From"] = formataddr((self._from_name or "", self._from_address))
        email["To"] = message.to
        email["Subject"] = message.subject
        if message.reply_to:
            email["Reply-To"] = message.reply_to
        if message.text:
            email.set_content(message.text)
            if message.html:
                email.add_alternative(message.html, subtype="html")
        else:
            email.set_content(message.html or "", subtype="html")
        return email

    async def send_message(self, message: OutboundMessage) -> None:
        email = self.build_message(message)
        try:
            await self._transport.send(email)
        except Exception as exc:
            if is_connection_error(exc):
                await self._transport.reset()
            raise

    async def send(self, delivery: Delivery) -> None:
        await self.send_message(message_from_delivery(delivery))


async def build_smtp_sender() -> SmtpSender:
    settings = get_settings()
    return SmtpSender(
        await get_smtp_transport(),
        from_address=settings.smtp_from_address or settings.smtp_user or "",
        from_name=settings.smtp_from_name,
    )
