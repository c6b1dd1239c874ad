"""
Core data models for the PulseResQ escalation dispatcher.

Facilities, incidents and attempt records are immutable once created: a
facility is frozen for the life of a ranking, an incident for the life of
its escalation, and an attempt record forever (the attempt log is an audit
trail).  Validation failures on inbound data are reported as
``InputError`` so callers never have to know about pydantic.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from pulseresq.errors import InputError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ChannelKind(str, enum.Enum):
    """Notification transports a facility can be reached through.

    ``SMS``, ``WHATSAPP`` and ``VOICE`` all use the facility's phone number.
    """

    WEBHOOK = "webhook"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    VOICE = "voice"
    EMAIL = "email"


class AttemptOutcome(str, enum.Enum):
    """Result of a single channel attempt against a single facility.

    * ``ACCEPTED``    -- the facility took responsibility for the incident.
    * ``DECLINED``    -- the facility answered no, or the channel has no way
      to carry an answer back.
    * ``NO_RESPONSE`` -- the attempt did not finish within its timeout.
    * ``ERROR``       -- transport failure, malformed response, or no usable
      channel at all.
    """

    ACCEPTED = "accepted"
    DECLINED = "declined"
    NO_RESPONSE = "no-response"
    ERROR = "error"


class SessionStatus(str, enum.Enum):
    """Lifecycle of one escalation session.

    ``NONE_YET`` is the only non-terminal state.  A session leaves it
    exactly once, to either ``ACCEPTED`` or ``EXHAUSTED``.
    """

    NONE_YET = "NONE_YET"
    ACCEPTED = "ACCEPTED"
    EXHAUSTED = "EXHAUSTED"


class OutcomeStatus(str, enum.Enum):
    """Status reported at the boundary once a session is terminal."""

    ACCEPTED = "accepted"
    EXHAUSTED = "exhausted"


# ---------------------------------------------------------------------------
# Geography
# ---------------------------------------------------------------------------

class Coordinate(BaseModel):
    """A geographic point in decimal degrees."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)

    @classmethod
    def of(cls, lat: Any, lon: Any) -> "Coordinate":
        """Build a coordinate from loosely-typed input, raising ``InputError``."""
        if lat is None or lon is None:
            raise InputError("Latitude and longitude are required.")
        try:
            return cls(latitude=lat, longitude=lon)
        except ValidationError as exc:
            raise InputError(f"Invalid coordinate ({lat}, {lon}): {exc}") from exc


# ---------------------------------------------------------------------------
# Facilities
# ---------------------------------------------------------------------------

class ContactChannels(BaseModel):
    """Ways a facility can be contacted.  Any subset may be missing."""

    model_config = ConfigDict(frozen=True)

    webhook: Optional[str] = Field(
        default=None,
        description="HTTP(S) endpoint that answers alerts with {\"accepted\": bool}.",
    )
    phone: Optional[str] = Field(
        default=None,
        description="E.164 phone number used for SMS, WhatsApp and voice calls.",
    )
    email: Optional[str] = Field(default=None)

    @field_validator("webhook")
    @classmethod
    def webhook_is_http(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(f"webhook must be an http(s) URL, got '{v}'")
        return v

    @field_validator("webhook", "phone", "email", mode="before")
    @classmethod
    def blank_is_missing(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    def address_for(self, kind: ChannelKind) -> Optional[str]:
        """Return the address a channel kind would use, or None if absent."""
        if kind == ChannelKind.WEBHOOK:
            return self.webhook
        if kind in (ChannelKind.SMS, ChannelKind.WHATSAPP, ChannelKind.VOICE):
            return self.phone
        if kind == ChannelKind.EMAIL:
            return self.email
        return None

    def available(self, order: list[ChannelKind]) -> list[ChannelKind]:
        """Channel kinds usable for this facility, in the given priority order."""
        return [kind for kind in order if self.address_for(kind)]


class Facility(BaseModel):
    """A candidate responder (hospital) with location and contact channels."""

    model_config = ConfigDict(frozen=True)

    facility_id: str = Field(..., min_length=1, description="Stable identifier.")
    name: str = Field(default="Unknown Hospital")
    location: Coordinate
    channels: ContactChannels = Field(default_factory=ContactChannels)
    capabilities: frozenset[str] = Field(
        default_factory=frozenset,
        description="Lower-cased capability tags, e.g. 'cardiac'.",
    )
    address: Optional[str] = Field(
        default=None,
        description="Street address, from OSM addr:* tags or reverse geocoding.",
    )

    @field_validator("capabilities", mode="before")
    @classmethod
    def normalize_capabilities(cls, v: Any) -> Any:
        if v is None:
            return frozenset()
        if isinstance(v, str):
            v = [v]
        return frozenset(str(tag).strip().lower() for tag in v if str(tag).strip())

    def has_capability(self, tag: str) -> bool:
        return tag.strip().lower() in self.capabilities

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Facility":
        """Build a facility from the lookup output shape.

        Expected keys: ``id``, ``name``, ``lat``, ``lon``, ``tags``,
        ``channels`` (a mapping with ``webhook``/``phone``/``email``) and an
        optional ``address``.

        Raises:
            InputError: If the entry is missing an id or has a bad coordinate.
        """
        if not isinstance(data, dict):
            raise InputError(f"Facility entry must be a mapping, got {type(data).__name__}.")
        try:
            return cls(
                facility_id=str(data["id"]),
                name=data.get("name") or "Unknown Hospital",
                location=Coordinate(latitude=data["lat"], longitude=data["lon"]),
                channels=ContactChannels(**(data.get("channels") or {})),
                capabilities=data.get("tags") or [],
                address=data.get("address") or None,
            )
        except (KeyError, TypeError, ValidationError) as exc:
            raise InputError(f"Invalid facility entry {data!r}: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the lookup output shape."""
        data: dict[str, Any] = {
            "id": self.facility_id,
            "name": self.name,
            "lat": self.location.latitude,
            "lon": self.location.longitude,
            "tags": sorted(self.capabilities),
            "channels": self.channels.model_dump(exclude_none=True),
        }
        if self.address:
            data["address"] = self.address
        return data


class RankedCandidate(BaseModel):
    """A facility together with its distance from the incident."""

    model_config = ConfigDict(frozen=True)

    facility: Facility
    distance_km: float = Field(..., ge=0.0)
    rank: int = Field(..., ge=0, description="0-based position in the ranked list.")

    @property
    def facility_id(self) -> str:
        return self.facility.facility_id


# ---------------------------------------------------------------------------
# Incidents
# ---------------------------------------------------------------------------

class VitalSigns(BaseModel):
    """Vital-sign snapshot taken by the wearable when the alarm fired."""

    model_config = ConfigDict(frozen=True)

    heart_rate: Optional[float] = Field(
        default=None, ge=0, le=400, description="Beats per minute, if the device measured it."
    )
    spo2: Optional[float] = Field(
        default=None, ge=0, le=100, description="Oxygen saturation in percent."
    )
    ecg_excerpt: tuple[float, ...] = Field(
        default=(),
        description="Raw waveform samples around the alarm, if the device sent any.",
    )
    irregular_rhythm: bool = Field(
        default=False,
        description="Set by the on-device detector when the rhythm looks irregular.",
    )

    @field_validator("ecg_excerpt", mode="before")
    @classmethod
    def coerce_ecg(cls, v: Any) -> Any:
        if v is None:
            return ()
        if isinstance(v, (int, float)):
            return (float(v),)
        return v


class Incident(BaseModel):
    """One emergency alert.  Immutable for the life of its escalation."""

    model_config = ConfigDict(frozen=True)

    incident_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    device_id: str = Field(..., min_length=1, description="Device / patient identifier.")
    location: Coordinate
    vitals: VitalSigns
    required_capability: Optional[str] = Field(
        default=None,
        description="Capability a facility should have, derived from the vitals.",
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_alert(
        cls,
        payload: dict[str, Any],
        required_capability: Optional[str] = None,
    ) -> "Incident":
        """Parse a raw device alert.

        Payload shape::

            {"device_id": "PRQ-001",
             "location": {"lat": 12.97, "lon": 77.59},
             "heart_rate": 134, "spo2": 93, "ecg": [0.12, 0.4, ...],
             "irregular_rhythm": true}

        Only ``device_id`` and ``location`` are required; vitals the device
        did not send are left unset.

        Raises:
            InputError: If the device id or location is missing, or a vital
                sign is out of range or malformed.
        """
        if not isinstance(payload, dict):
            raise InputError("Alert payload must be a mapping.")
        location = payload.get("location") or {}
        if not payload.get("device_id") or not isinstance(location, dict) or not location:
            raise InputError("Missing device or location data.")
        coordinate = Coordinate.of(location.get("lat"), location.get("lon"))
        try:
            vitals = VitalSigns(
                heart_rate=payload.get("heart_rate"),
                spo2=payload.get("spo2"),
                ecg_excerpt=payload.get("ecg"),
                irregular_rhythm=payload.get("irregular_rhythm") or False,
            )
            return cls(
                device_id=str(payload["device_id"]),
                location=coordinate,
                vitals=vitals,
                required_capability=required_capability,
            )
        except ValidationError as exc:
            raise InputError(f"Invalid alert payload: {exc}") from exc

    def with_required_capability(self, tag: Optional[str]) -> "Incident":
        return self.model_copy(update={"required_capability": tag})

    def patient_payload(self) -> dict[str, Any]:
        """Body sent to facilities describing the patient."""
        return {
            "device_id": self.device_id,
            "incident_id": self.incident_id,
            "heart_rate": self.vitals.heart_rate,
            "spo2": self.vitals.spo2,
            "ecg": list(self.vitals.ecg_excerpt),
            "irregular_rhythm": self.vitals.irregular_rhythm,
            "required_capability": self.required_capability,
            "timestamp": self.created_at.isoformat(),
            "location": {
                "lat": self.location.latitude,
                "lon": self.location.longitude,
            },
        }


# ---------------------------------------------------------------------------
# Attempts and outcomes
# ---------------------------------------------------------------------------

class AttemptRecord(BaseModel):
    """Immutable audit entry for one channel attempt against one facility.

    ``channel`` is None only for the single ``no-comm-path`` record written
    when a facility has no usable channel at all.
    """

    model_config = ConfigDict(frozen=True)

    facility_id: str
    channel: Optional[ChannelKind] = None
    outcome: AttemptOutcome
    detail: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    batch_index: int = Field(default=0, ge=0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "channel": self.channel.value if self.channel else None,
            "outcome": self.outcome.value,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat(),
            "batch_index": self.batch_index,
        }


class EscalationOutcome(BaseModel):
    """Terminal result of an escalation as reported at the boundary."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    status: OutcomeStatus
    facility: Optional[Facility] = None
    attempts: tuple[AttemptRecord, ...] = ()

    @property
    def accepted(self) -> bool:
        return self.status == OutcomeStatus.ACCEPTED

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "session_id": self.session_id,
            "status": self.status.value,
            "attempts": [a.to_dict() for a in self.attempts],
        }
        if self.facility is not None:
            data["facility"] = self.facility.to_dict()
        return data
