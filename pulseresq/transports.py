"""
Outbound transports behind the fire-and-forget channel adapters.

* ``TwilioMessenger`` -- SMS, WhatsApp and voice calls through Twilio's REST
  API.  The Twilio SDK is synchronous, so every call runs in a worker thread
  via ``asyncio.to_thread``; cancelling the awaiting task abandons the call
  without blocking the event loop.
* ``SmtpMailer`` -- plain-text e-mail over SMTP (STARTTLS by default).

Both raise ``ChannelFailure`` for any delivery problem so adapters can turn
it into an ``error`` attempt record.

``build_default_adapters`` wires one adapter per configured channel kind.
Kinds whose transport has no credentials are left out, and the dispatcher
skips them for every facility.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional
from xml.sax.saxutils import escape as _xml_escape

import httpx
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from pulseresq.channels import (
    ChannelAdapter,
    EmailAdapter,
    SmsAdapter,
    VoiceCallAdapter,
    WebhookAdapter,
    WhatsAppAdapter,
)
from pulseresq.config import DispatchConfig, TransportSettings
from pulseresq.errors import ChannelFailure
from pulseresq.models import ChannelKind

logger = logging.getLogger(__name__)


class TwilioMessenger:
    """Phone transports backed by a Twilio account."""

    def __init__(self, settings: TransportSettings, client: Optional[Client] = None) -> None:
        if client is None and not settings.twilio_configured:
            raise ValueError(
                "Twilio credentials not configured. Set PULSERESQ_TWILIO_ACCOUNT_SID, "
                "PULSERESQ_TWILIO_AUTH_TOKEN and PULSERESQ_TWILIO_FROM_NUMBER"
            )
        self._settings = settings
        self._client = client or Client(
            settings.twilio_account_sid, settings.twilio_auth_token
        )

    async def send_sms(self, to: str, body: str) -> str:
        return await self._create_message(self._settings.twilio_from_number, to, body)

    async def send_whatsapp(self, to: str, body: str) -> str:
        sender = self._settings.twilio_whatsapp_from or self._settings.twilio_from_number
        return await self._create_message(f"whatsapp:{sender}", f"whatsapp:{to}", body)

    async def place_call(self, to: str, body: str) -> str:
        twiml = (
            f'<Response><Say language="{self._settings.voice_language}">'
            f"{_xml_escape(body)}</Say></Response>"
        )

        def _call() -> str:
            call = self._client.calls.create(
                to=to, from_=self._settings.twilio_from_number, twiml=twiml
            )
            return call.sid

        try:
            sid = await asyncio.to_thread(_call)
        except TwilioException as exc:
            raise ChannelFailure(str(exc)) from exc
        logger.info("Voice call %s placed to %s", sid, to)
        return sid

    async def _create_message(self, from_: Optional[str], to: str, body: str) -> str:
        def _send() -> str:
            message = self._client.messages.create(from_=from_, to=to, body=body)
            return message.sid

        try:
            sid = await asyncio.to_thread(_send)
        except TwilioException as exc:
            raise ChannelFailure(str(exc)) from exc
        logger.info("Message %s sent to %s", sid, to)
        return sid


class SmtpMailer:
    """E-mail transport over SMTP."""

    def __init__(self, settings: TransportSettings, timeout: float = 10.0) -> None:
        if not settings.smtp_configured:
            raise ValueError(
                "SMTP not configured. Set PULSERESQ_SMTP_HOST and PULSERESQ_SMTP_SENDER"
            )
        self._settings = settings
        self._timeout = timeout

    def _build(self, to: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self._settings.smtp_sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        return msg

    def _send_blocking(self, msg: EmailMessage) -> None:
        s = self._settings
        with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=self._timeout) as smtp:
            if s.smtp_use_tls:
                smtp.starttls()
            if s.smtp_username:
                smtp.login(s.smtp_username, s.smtp_password or "")
            smtp.send_message(msg)

    async def send_email(self, to: str, subject: str, body: str) -> str:
        msg = self._build(to, subject, body)
        try:
            await asyncio.to_thread(self._send_blocking, msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelFailure(str(exc)) from exc
        logger.info("Alert e-mail sent to %s", to)
        return f"smtp:{to}"


def build_default_adapters(
    settings: TransportSettings,
    dispatch: DispatchConfig | None = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> dict[ChannelKind, ChannelAdapter]:
    """Create an adapter for every channel kind whose transport is available.

    The webhook adapter needs no credentials and is always present.
    """
    dispatch = dispatch or DispatchConfig()
    trust = dispatch.delivery_counts_as_acceptance
    adapters: dict[ChannelKind, ChannelAdapter] = {
        ChannelKind.WEBHOOK: WebhookAdapter(http_client),
    }

    if settings.twilio_configured:
        messenger = TwilioMessenger(settings)
        adapters[ChannelKind.SMS] = SmsAdapter(messenger, trust)
        adapters[ChannelKind.WHATSAPP] = WhatsAppAdapter(messenger, trust)
        adapters[ChannelKind.VOICE] = VoiceCallAdapter(messenger, trust)
    else:
        logger.warning("Twilio not configured; sms, whatsapp and voice channels disabled")

    if settings.smtp_configured:
        adapters[ChannelKind.EMAIL] = EmailAdapter(SmtpMailer(settings), trust)
    else:
        logger.warning("SMTP not configured; email channel disabled")

    return adapters
