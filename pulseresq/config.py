"""
Configuration for the PulseResQ escalation dispatcher.

Operational knobs (batch size, timeouts, channel priority, triage
thresholds, lookup radius) live in validated pydantic models that can be
loaded from a YAML file.  Transport credentials (Twilio, SMTP) never go in
that file; they are read from ``PULSERESQ_*`` environment variables through
``TransportSettings``.

**Why the dispatch knobs are configurable:**

Deployments differ.  A dense city has dozens of hospitals inside the search
radius and can afford small batches with a short acceptance window; a rural
deployment may have three candidates in total and should wait longer for
each.  Hospitals wired into a webhook integration should be tried first; a
region where hospitals only pick up the phone may put ``voice`` ahead of
``sms``.

DISCLAIMER: These values configure a notification protocol.  They are not
clinical thresholds and carry no diagnostic meaning on their own.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pulseresq.models import ChannelKind


# ---------------------------------------------------------------------------
# Dispatch configuration
# ---------------------------------------------------------------------------

DEFAULT_CHANNEL_ORDER: list[ChannelKind] = [
    ChannelKind.WEBHOOK,
    ChannelKind.SMS,
    ChannelKind.WHATSAPP,
    ChannelKind.VOICE,
    ChannelKind.EMAIL,
]

MAX_ACCEPTANCE_WINDOW_SECONDS = 300.0


class DispatchConfig(BaseModel):
    """How the dispatcher walks the ranked candidate list."""

    batch_size: int = Field(
        default=3,
        ge=1,
        description="Number of facilities notified concurrently per round.",
    )
    per_channel_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Maximum seconds to wait for a single channel attempt.",
    )
    acceptance_window: float = Field(
        default=90.0,
        gt=0,
        le=MAX_ACCEPTANCE_WINDOW_SECONDS,
        description=(
            "Maximum seconds a batch may run before the dispatcher abandons "
            "its stragglers and moves on to the next batch."
        ),
    )
    channel_order: list[ChannelKind] = Field(
        default_factory=lambda: list(DEFAULT_CHANNEL_ORDER),
        description=(
            "Channel priority per facility.  Channels are tried one after "
            "another, falling through only when the previous one did not "
            "yield an acceptance."
        ),
    )
    delivery_counts_as_acceptance: bool = Field(
        default=False,
        description=(
            "Trust assumption: treat a successfully delivered SMS, WhatsApp "
            "message, voice call or email as an acceptance.  Off by default "
            "because those channels cannot carry an answer back."
        ),
    )

    @field_validator("channel_order")
    @classmethod
    def channel_order_unique(cls, v: list[ChannelKind]) -> list[ChannelKind]:
        if not v:
            raise ValueError("channel_order must name at least one channel")
        if len(set(v)) != len(v):
            raise ValueError(f"channel_order contains duplicates: {[c.value for c in v]}")
        return v


# ---------------------------------------------------------------------------
# Triage thresholds
# ---------------------------------------------------------------------------

class TriageThresholds(BaseModel):
    """Vital-sign limits used to derive the incident's capability requirement."""

    bradycardia_bpm: float = Field(
        default=40.0,
        ge=0,
        description="Heart rate below which the incident requires a cardiac facility.",
    )
    tachycardia_bpm: float = Field(
        default=120.0,
        gt=0,
        description="Heart rate above which the incident requires a cardiac facility.",
    )
    min_spo2: float = Field(
        default=90.0,
        ge=0,
        le=100,
        description="Oxygen saturation below which the alert is considered critical.",
    )

    @field_validator("tachycardia_bpm")
    @classmethod
    def tachycardia_above_bradycardia(cls, v: float, info) -> float:
        brady = info.data.get("bradycardia_bpm")
        if brady is not None and v <= brady:
            raise ValueError(
                f"tachycardia_bpm ({v}) must be > bradycardia_bpm ({brady})"
            )
        return v


# ---------------------------------------------------------------------------
# Lookup and session settings
# ---------------------------------------------------------------------------

class LookupSettings(BaseModel):
    """Where candidate facilities come from."""

    overpass_url: str = Field(default="https://overpass-api.de/api/interpreter")
    search_radius_m: int = Field(default=8000, gt=0)
    request_timeout: float = Field(default=20.0, gt=0)
    cache_ttl_seconds: float = Field(
        default=300.0,
        ge=0,
        description="How long a lookup result may be reused.  0 disables caching.",
    )
    user_agent: str = Field(default="PulseResQ/1.0")
    reverse_geocode: bool = Field(
        default=False,
        description="Fill in missing facility addresses through Nominatim reverse geocoding.",
    )
    nominatim_url: str = Field(default="https://nominatim.openstreetmap.org/reverse")
    reverse_geocode_limit: int = Field(
        default=5,
        ge=0,
        description="At most this many facilities are reverse geocoded per lookup.",
    )
    registry_path: Optional[Path] = Field(
        default=None,
        description="YAML/JSON registry of pre-seeded fallback facilities.",
    )


class SessionSettings(BaseModel):
    """How long finished sessions are kept around for boundary queries."""

    retention_seconds: float = Field(default=3600.0, gt=0)
    attempt_log_path: Optional[Path] = Field(
        default=None,
        description="Optional JSON-lines file every attempt record is appended to.",
    )


class ServiceConfig(BaseModel):
    """Complete configuration for one ``EmergencyService``."""

    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    triage: TriageThresholds = Field(default_factory=TriageThresholds)
    lookup: LookupSettings = Field(default_factory=LookupSettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)


DEFAULT_CONFIG = ServiceConfig()
"""Built-in defaults: batches of 3, 5 s per channel, 90 s acceptance window,
webhook first, 8 km search radius, 5 minute lookup cache."""


# ---------------------------------------------------------------------------
# Transport credentials (environment)
# ---------------------------------------------------------------------------

class TransportSettings(BaseSettings):
    """Credentials for the outbound transports, read from the environment.

    Precedence: env var > .env file > default value.
    """

    model_config = SettingsConfigDict(
        env_prefix="PULSERESQ_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from_number: Optional[str] = None
    twilio_whatsapp_from: Optional[str] = None
    voice_language: str = "en-US"

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: Optional[str] = None
    smtp_use_tls: bool = True

    @property
    def twilio_configured(self) -> bool:
        return bool(
            self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number
        )

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_sender)


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_config_from_yaml(path: str | Path) -> ServiceConfig:
    """Load a service configuration from a YAML file.

    The YAML file should contain a top-level ``pulseresq`` key.  Any section
    that is omitted keeps its defaults.

    Example YAML structure::

        pulseresq:
          dispatch:
            batch_size: 2
            acceptance_window: 45
            channel_order: [webhook, voice, sms]
          lookup:
            search_radius_m: 12000
            registry_path: data/hospitals.yaml

    Args:
        path: Path to the YAML file.

    Returns:
        A validated ``ServiceConfig``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any value fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "pulseresq" not in raw:
        raise ValueError("YAML file must contain a top-level 'pulseresq' mapping.")

    section = raw["pulseresq"] or {}
    if not isinstance(section, dict):
        raise ValueError("'pulseresq' must be a mapping of config sections.")

    config = ServiceConfig(**section)

    # Relative registry/log paths are resolved against the config file.
    registry = config.lookup.registry_path
    if registry is not None and not registry.is_absolute():
        config.lookup.registry_path = path.parent / registry
    log_path = config.sessions.attempt_log_path
    if log_path is not None and not log_path.is_absolute():
        config.sessions.attempt_log_path = path.parent / log_path

    return config
