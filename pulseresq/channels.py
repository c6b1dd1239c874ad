"""
Channel Adapters -- how a single facility is notified over a single channel.

Every adapter satisfies one contract::

    await adapter.attempt_notify(facility, incident, timeout) -> ChannelResult

``ChannelResult`` is a closed variant over ``AttemptOutcome``: accepted,
declined, no-response, or error(detail).  The dispatcher branches on it
exhaustively and never inspects transport-specific response shapes.

**Acknowledgment model:**

* ``WebhookAdapter`` is the only channel that can carry an answer back.  A
  2xx JSON body with ``"accepted": true`` is an acceptance; any other
  well-formed body is a decline; transport failures, non-2xx statuses and
  malformed bodies are errors.
* SMS, WhatsApp, voice and e-mail are fire-and-forget.  After a successful
  send they report ``declined`` so the dispatcher keeps escalating.  Setting
  ``delivery_counts_as_acceptance`` makes a successful send count as an
  acceptance instead -- a deliberate trust assumption that the recipient
  will act on the message.
"""

from __future__ import annotations

import abc
import logging
from typing import Optional, Protocol

import httpx

from pulseresq.errors import ChannelFailure
from pulseresq.models import AttemptOutcome, ChannelKind, Facility, Incident

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result variant
# ---------------------------------------------------------------------------

class ChannelResult:
    """Outcome of one ``attempt_notify`` call."""

    __slots__ = ("outcome", "detail")

    def __init__(self, outcome: AttemptOutcome, detail: str = "") -> None:
        self.outcome = outcome
        self.detail = detail

    @classmethod
    def accepted(cls, detail: str = "") -> "ChannelResult":
        return cls(AttemptOutcome.ACCEPTED, detail)

    @classmethod
    def declined(cls, detail: str = "") -> "ChannelResult":
        return cls(AttemptOutcome.DECLINED, detail)

    @classmethod
    def no_response(cls, detail: str = "") -> "ChannelResult":
        return cls(AttemptOutcome.NO_RESPONSE, detail)

    @classmethod
    def error(cls, detail: str) -> "ChannelResult":
        return cls(AttemptOutcome.ERROR, detail)

    @property
    def is_accepted(self) -> bool:
        return self.outcome == AttemptOutcome.ACCEPTED

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ChannelResult):
            return NotImplemented
        return self.outcome == other.outcome and self.detail == other.detail

    def __repr__(self) -> str:
        return f"ChannelResult({self.outcome.value}, detail={self.detail!r})"


# ---------------------------------------------------------------------------
# Adapter contract
# ---------------------------------------------------------------------------

class ChannelAdapter(abc.ABC):
    """A notification transport the dispatcher can invoke."""

    kind: ChannelKind

    @abc.abstractmethod
    async def attempt_notify(
        self,
        facility: Facility,
        incident: Incident,
        timeout: float,
    ) -> ChannelResult:
        """Notify one facility about one incident.

        Implementations should translate their own failures into
        ``ChannelResult.error``; anything they still raise is recorded as an
        error by the dispatcher.
        """


def format_alert_message(incident: Incident, facility: Optional[Facility] = None) -> str:
    """Short text body used by SMS, WhatsApp, voice and e-mail."""
    loc = incident.location
    text = (
        f"Emergency! Patient {incident.device_id} needs help at "
        f"{loc.latitude:.5f}, {loc.longitude:.5f}."
    )
    vitals = []
    if incident.vitals.heart_rate is not None:
        vitals.append(f"Heart rate {incident.vitals.heart_rate:g} bpm")
    if incident.vitals.spo2 is not None:
        vitals.append(f"SpO2 {incident.vitals.spo2:g}%")
    if vitals:
        text += f" {', '.join(vitals)}."
    if incident.required_capability:
        text += f" Requires {incident.required_capability} care."
    if facility is not None:
        text += f" Ref {incident.incident_id[:8]} for {facility.name}."
    return text


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

class WebhookAdapter(ChannelAdapter):
    """POSTs the patient payload to the facility's webhook and reads the answer.

    Request body::

        {"patient": {...}, "facility_id": "osm:node/123"}

    Expected answer::

        {"accepted": true, "hospital": "City Care Hospital"}
    """

    kind = ChannelKind.WEBHOOK

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def attempt_notify(
        self,
        facility: Facility,
        incident: Incident,
        timeout: float,
    ) -> ChannelResult:
        url = facility.channels.webhook
        if not url:
            return ChannelResult.error("no webhook endpoint")

        body = {"patient": incident.patient_payload(), "facility_id": facility.facility_id}
        try:
            resp = await self._get_client().post(url, json=body, timeout=timeout)
        except httpx.TimeoutException:
            return ChannelResult.no_response(f"webhook timed out after {timeout:g}s")
        except httpx.HTTPError as exc:
            logger.info("Webhook for %s failed: %s", facility.name, exc)
            return ChannelResult.error(f"webhook transport error: {type(exc).__name__}")

        if not resp.is_success:
            return ChannelResult.error(f"webhook returned HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError:
            return ChannelResult.error("webhook returned malformed JSON")
        if not isinstance(data, dict):
            return ChannelResult.error("webhook returned a non-object body")

        if data.get("accepted") is True:
            return ChannelResult.accepted("accepted via webhook")
        return ChannelResult.declined("facility declined via webhook")


# ---------------------------------------------------------------------------
# Fire-and-forget channels
# ---------------------------------------------------------------------------

class MessageSender(Protocol):
    """Phone-number transports (see ``pulseresq.transports.TwilioMessenger``)."""

    async def send_sms(self, to: str, body: str) -> str: ...

    async def send_whatsapp(self, to: str, body: str) -> str: ...

    async def place_call(self, to: str, body: str) -> str: ...


class MailSender(Protocol):
    """E-mail transport (see ``pulseresq.transports.SmtpMailer``)."""

    async def send_email(self, to: str, subject: str, body: str) -> str: ...


class _DeliveryAdapter(ChannelAdapter):
    """Shared behaviour for channels that can send but not hear back."""

    def __init__(self, delivery_counts_as_acceptance: bool = False) -> None:
        self.delivery_counts_as_acceptance = delivery_counts_as_acceptance

    @abc.abstractmethod
    async def _deliver(self, address: str, facility: Facility, incident: Incident) -> str:
        """Send the message; return a provider reference.  Raise ChannelFailure."""

    async def attempt_notify(
        self,
        facility: Facility,
        incident: Incident,
        timeout: float,
    ) -> ChannelResult:
        address = facility.channels.address_for(self.kind)
        if not address:
            return ChannelResult.error(f"no {self.kind.value} address")
        try:
            ref = await self._deliver(address, facility, incident)
        except ChannelFailure as exc:
            return ChannelResult.error(f"{self.kind.value} send failed: {exc}")

        if self.delivery_counts_as_acceptance:
            return ChannelResult.accepted(f"{self.kind.value} delivered ({ref}); counted as acceptance")
        return ChannelResult.declined(f"{self.kind.value} sent ({ref}); no acknowledgment channel")


class SmsAdapter(_DeliveryAdapter):
    kind = ChannelKind.SMS

    def __init__(self, sender: MessageSender, delivery_counts_as_acceptance: bool = False) -> None:
        super().__init__(delivery_counts_as_acceptance)
        self._sender = sender

    async def _deliver(self, address: str, facility: Facility, incident: Incident) -> str:
        return await self._sender.send_sms(address, format_alert_message(incident, facility))


class WhatsAppAdapter(_DeliveryAdapter):
    kind = ChannelKind.WHATSAPP

    def __init__(self, sender: MessageSender, delivery_counts_as_acceptance: bool = False) -> None:
        super().__init__(delivery_counts_as_acceptance)
        self._sender = sender

    async def _deliver(self, address: str, facility: Facility, incident: Incident) -> str:
        return await self._sender.send_whatsapp(address, format_alert_message(incident, facility))


class VoiceCallAdapter(_DeliveryAdapter):
    kind = ChannelKind.VOICE

    def __init__(self, sender: MessageSender, delivery_counts_as_acceptance: bool = False) -> None:
        super().__init__(delivery_counts_as_acceptance)
        self._sender = sender

    async def _deliver(self, address: str, facility: Facility, incident: Incident) -> str:
        return await self._sender.place_call(address, format_alert_message(incident, facility))


class EmailAdapter(_DeliveryAdapter):
    kind = ChannelKind.EMAIL

    def __init__(self, sender: MailSender, delivery_counts_as_acceptance: bool = False) -> None:
        super().__init__(delivery_counts_as_acceptance)
        self._sender = sender

    async def _deliver(self, address: str, facility: Facility, incident: Incident) -> str:
        subject = f"Emergency Alert: patient {incident.device_id}"
        return await self._sender.send_email(
            address, subject, format_alert_message(incident, facility)
        )
