"""
Boundary service -- the operations a front door (HTTP, CLI, queue consumer)
calls into.

* ``find_candidates``      -- facilities around a coordinate, capability
  filter applied with the same relaxation rule as ranking.
* ``start_escalation``     -- run one escalation to a terminal outcome.
* ``get_session_attempts`` -- the attempt log of a session, for audit.
* ``handle_alert``         -- the whole pipeline for a raw device alert:
  validate, triage, look up, rank, escalate.

Only ``InputError`` escapes before work starts.  A failing facility source
degrades to an empty candidate list, which the dispatcher reports as
EXHAUSTED; channel failures never leave the dispatcher.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from pulseresq.config import DEFAULT_CONFIG, DispatchConfig, ServiceConfig, TransportSettings
from pulseresq.dispatcher import EscalationDispatcher, check_escalation_inputs
from pulseresq.errors import InputError, LookupFailure
from pulseresq.lookup import FacilityLookup, build_default_lookup
from pulseresq.models import (
    AttemptRecord,
    Coordinate,
    EscalationOutcome,
    Facility,
    Incident,
    RankedCandidate,
)
from pulseresq.ranking import dedupe_facilities, filter_by_capability, rank
from pulseresq.report import EscalationReport, generate_escalation_report
from pulseresq.session import SessionStore
from pulseresq.transports import build_default_adapters
from pulseresq.triage import assess_vitals

logger = logging.getLogger(__name__)


class EmergencyService:
    """Facade over lookup, ranking, dispatch and session storage."""

    def __init__(
        self,
        lookup: FacilityLookup,
        dispatcher: EscalationDispatcher,
        config: ServiceConfig | None = None,
        store: SessionStore | None = None,
    ) -> None:
        self.config = config or DEFAULT_CONFIG
        self._lookup = lookup
        self._dispatcher = dispatcher
        if store is None:
            store = SessionStore(
                retention_seconds=self.config.sessions.retention_seconds,
                attempt_log_path=self.config.sessions.attempt_log_path,
            )
        self._store = store

    @classmethod
    def from_config(
        cls,
        config: ServiceConfig | None = None,
        transports: TransportSettings | None = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "EmergencyService":
        """Wire the default Overpass lookup and transport adapters."""
        config = config or DEFAULT_CONFIG
        transports = transports or TransportSettings()
        adapters = build_default_adapters(transports, config.dispatch, http_client)
        return cls(
            lookup=build_default_lookup(config.lookup, http_client),
            dispatcher=EscalationDispatcher(adapters, config.dispatch),
            config=config,
        )

    @property
    def sessions(self) -> SessionStore:
        return self._store

    # -- boundary operations --

    async def find_candidates(
        self,
        lat: Any,
        lon: Any,
        radius_m: Optional[int] = None,
        required_capability: Optional[str] = None,
    ) -> list[Facility]:
        """Facilities within ``radius_m`` of (lat, lon).

        Raises:
            InputError: If the coordinate or radius is invalid.
        """
        origin = Coordinate.of(lat, lon)
        if radius_m is None:
            radius = self.config.lookup.search_radius_m
        else:
            try:
                radius = int(radius_m)
            except (TypeError, ValueError) as exc:
                raise InputError(
                    f"Search radius must be a whole number of metres, got {radius_m!r}."
                ) from exc
        if radius <= 0:
            raise InputError(f"Search radius must be positive, got {radius}.")

        try:
            facilities = await self._lookup.find(origin, radius)
        except LookupFailure as exc:
            logger.error("Facility lookup unavailable: %s; continuing with no candidates", exc)
            facilities = []

        kept, _ = filter_by_capability(dedupe_facilities(facilities), required_capability)
        return kept

    async def start_escalation(
        self,
        incident: Incident,
        ranked_candidates: list[RankedCandidate],
        config: DispatchConfig | None = None,
    ) -> EscalationOutcome:
        """Escalate an incident across ranked candidates.

        Raises:
            InputError: If the incident is missing or candidates repeat.
        """
        check_escalation_inputs(ranked_candidates, incident)
        session = self._store.create(incident, ranked_candidates)
        return await self._dispatcher.escalate(
            ranked_candidates, incident, config=config, session=session
        )

    def get_session_attempts(self, session_id: str) -> list[AttemptRecord]:
        """Attempt records of a session, oldest first.

        Raises:
            SessionNotFoundError: If the session is unknown or expired.
        """
        return self._store.get(session_id).attempts()

    def get_outcome(self, session_id: str) -> Optional[EscalationOutcome]:
        """Terminal outcome of a session, or None while it is still running."""
        return self._store.get(session_id).outcome()

    def get_report(self, session_id: str) -> EscalationReport:
        return generate_escalation_report(self._store.get(session_id))

    async def handle_alert(self, payload: dict[str, Any]) -> EscalationOutcome:
        """Run the full pipeline for a raw device alert.

        Raises:
            InputError: If the payload is missing the device id or location,
                or carries a malformed vital sign.
        """
        incident = Incident.from_alert(payload)
        triage = assess_vitals(incident.vitals, self.config.triage)
        incident = incident.with_required_capability(triage.required_capability)
        logger.info(
            "Alert from device %s at (%.5f, %.5f): %s",
            incident.device_id,
            incident.location.latitude,
            incident.location.longitude,
            "; ".join(triage.reasons),
        )

        facilities = await self.find_candidates(
            incident.location.latitude, incident.location.longitude
        )
        ranked = rank(facilities, incident.location, incident.required_capability)
        return await self.start_escalation(incident, ranked)
