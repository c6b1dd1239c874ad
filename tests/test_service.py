"""
Tests for pulseresq.service -- EmergencyService boundary operations.

Covers: candidate search with radius validation and capability filter,
lookup failure degrading to exhaustion, start_escalation input checks,
session attempt queries, the full alert pipeline, report generation, and
session storage across cancelled escalations.
"""

from __future__ import annotations

import asyncio

import pytest

from pulseresq.channels import ChannelAdapter, ChannelResult
from pulseresq.config import DispatchConfig, ServiceConfig
from pulseresq.dispatcher import EscalationDispatcher
from pulseresq.errors import InputError, LookupFailure, SessionNotFoundError
from pulseresq.lookup import FacilityLookup, StaticRegistryLookup
from pulseresq.models import ChannelKind, Facility, Incident, OutcomeStatus
from pulseresq.ranking import rank
from pulseresq.service import EmergencyService
from pulseresq.session import SessionStore

ALERT = {
    "device_id": "PRQ-001",
    "location": {"lat": 12.9716, "lon": 77.5946},
    "heart_rate": 150,
    "spo2": 94,
    "ecg": [0.1, 0.4, 1.2, 0.3],
}


def _make_facilities() -> list[Facility]:
    return [
        Facility.from_dict({
            "id": "near-general", "name": "Near General", "lat": 12.9726, "lon": 77.5946,
            "channels": {"webhook": "http://near.test/alert"},
        }),
        Facility.from_dict({
            "id": "heart-centre", "name": "Heart Centre", "lat": 12.9900, "lon": 77.5946,
            "tags": ["cardiac"], "channels": {"webhook": "http://heart.test/alert",
                                              "phone": "+15550100"},
        }),
        Facility.from_dict({
            "id": "far-cardiac", "name": "Far Cardiac", "lat": 13.0300, "lon": 77.5946,
            "tags": ["cardiac"], "channels": {"email": "er@far.test"},
        }),
    ]


class ScriptedWebhook(ChannelAdapter):
    kind = ChannelKind.WEBHOOK

    def __init__(self, accepting: set[str]) -> None:
        self.accepting = accepting
        self.calls: list[str] = []

    async def attempt_notify(self, facility, incident, timeout):
        self.calls.append(facility.facility_id)
        if facility.facility_id in self.accepting:
            return ChannelResult.accepted("accepted via webhook")
        return ChannelResult.declined("facility declined via webhook")


class BrokenLookup(FacilityLookup):
    async def find(self, origin, radius_m):
        raise LookupFailure("Overpass down and no registry")


def _make_service(accepting: set[str] | None = None, lookup: FacilityLookup | None = None):
    webhook = ScriptedWebhook(accepting or set())
    config = ServiceConfig(dispatch=DispatchConfig(batch_size=2, acceptance_window=5))
    service = EmergencyService(
        lookup=lookup or StaticRegistryLookup(_make_facilities()),
        dispatcher=EscalationDispatcher([webhook], config.dispatch),
        config=config,
    )
    return service, webhook


# ---------------------------------------------------------------------------
# 1. find_candidates
# ---------------------------------------------------------------------------

class TestFindCandidates:
    @pytest.mark.asyncio
    async def test_returns_facilities_in_radius(self):
        service, _ = _make_service()
        found = await service.find_candidates(12.9716, 77.5946, radius_m=3000)
        assert {f.facility_id for f in found} == {"near-general", "heart-centre"}

    @pytest.mark.asyncio
    async def test_capability_filter(self):
        service, _ = _make_service()
        found = await service.find_candidates(12.9716, 77.5946, required_capability="cardiac")
        assert {f.facility_id for f in found} == {"heart-centre", "far-cardiac"}

    @pytest.mark.asyncio
    async def test_capability_filter_relaxes(self):
        service, _ = _make_service()
        found = await service.find_candidates(12.9716, 77.5946, required_capability="burns")
        assert len(found) == 3

    @pytest.mark.asyncio
    async def test_invalid_coordinate(self):
        service, _ = _make_service()
        with pytest.raises(InputError):
            await service.find_candidates(95.0, 77.5946)
        with pytest.raises(InputError):
            await service.find_candidates(None, 77.5946)

    @pytest.mark.asyncio
    async def test_non_positive_radius(self):
        service, _ = _make_service()
        with pytest.raises(InputError, match="radius"):
            await service.find_candidates(12.9716, 77.5946, radius_m=0)

    @pytest.mark.asyncio
    async def test_radius_given_as_string(self):
        service, _ = _make_service()
        found = await service.find_candidates("12.9716", "77.5946", radius_m="3000")
        assert {f.facility_id for f in found} == {"near-general", "heart-centre"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("radius", ["far", [5000], "-1"])
    async def test_malformed_radius(self, radius):
        service, _ = _make_service()
        with pytest.raises(InputError, match="radius"):
            await service.find_candidates(12.9716, 77.5946, radius_m=radius)

    @pytest.mark.asyncio
    async def test_lookup_failure_gives_empty_list(self):
        service, _ = _make_service(lookup=BrokenLookup())
        assert await service.find_candidates(12.9716, 77.5946) == []


# ---------------------------------------------------------------------------
# 2. Alert pipeline
# ---------------------------------------------------------------------------

class TestHandleAlert:
    @pytest.mark.asyncio
    async def test_cardiac_alert_goes_to_nearest_cardiac_facility(self):
        service, webhook = _make_service(accepting={"heart-centre", "near-general"})
        outcome = await service.handle_alert(ALERT)

        assert outcome.status == OutcomeStatus.ACCEPTED
        assert outcome.facility.facility_id == "heart-centre"
        # The non-cardiac facility is filtered out, not merely ranked lower.
        assert "near-general" not in webhook.calls

    @pytest.mark.asyncio
    async def test_normal_vitals_go_to_nearest(self):
        service, _ = _make_service(accepting={"near-general", "heart-centre"})
        outcome = await service.handle_alert(dict(ALERT, heart_rate=80))
        assert outcome.facility.facility_id == "near-general"

    @pytest.mark.asyncio
    async def test_no_one_accepts(self):
        service, _ = _make_service()
        outcome = await service.handle_alert(ALERT)
        assert outcome.status == OutcomeStatus.EXHAUSTED

    @pytest.mark.asyncio
    async def test_lookup_failure_ends_exhausted(self):
        service, _ = _make_service(lookup=BrokenLookup())
        outcome = await service.handle_alert(ALERT)
        assert outcome.status == OutcomeStatus.EXHAUSTED
        assert outcome.attempts == ()

    @pytest.mark.asyncio
    async def test_missing_location_rejected(self):
        service, webhook = _make_service()
        with pytest.raises(InputError, match="Missing device or location"):
            await service.handle_alert({"device_id": "PRQ-001", "heart_rate": 150})
        assert webhook.calls == []
        assert len(service.sessions) == 0

    @pytest.mark.asyncio
    async def test_alert_without_heart_rate_still_escalates(self):
        service, _ = _make_service(accepting={"near-general"})
        alert = {"device_id": "PRQ-001", "location": ALERT["location"], "spo2": 96}
        outcome = await service.handle_alert(alert)
        assert outcome.status == OutcomeStatus.ACCEPTED
        assert outcome.facility.facility_id == "near-general"

    @pytest.mark.asyncio
    async def test_string_rhythm_flag_false_is_not_cardiac(self):
        service, _ = _make_service(accepting={"near-general"})
        outcome = await service.handle_alert(
            dict(ALERT, heart_rate=80, irregular_rhythm="false")
        )
        assert outcome.facility.facility_id == "near-general"
        session = service.sessions.get(outcome.session_id)
        assert session.incident.required_capability is None


# ---------------------------------------------------------------------------
# 3. Sessions and reports
# ---------------------------------------------------------------------------

class TestSessionQueries:
    @pytest.mark.asyncio
    async def test_attempts_available_by_session_id(self):
        service, _ = _make_service(accepting={"heart-centre"})
        outcome = await service.handle_alert(ALERT)

        attempts = service.get_session_attempts(outcome.session_id)
        assert [a.facility_id for a in attempts] == [a.facility_id for a in outcome.attempts]
        assert service.get_outcome(outcome.session_id) == outcome

    def test_unknown_session(self):
        service, _ = _make_service()
        with pytest.raises(SessionNotFoundError):
            service.get_session_attempts("missing")

    @pytest.mark.asyncio
    async def test_duplicate_candidates_rejected_before_session(self):
        service, _ = _make_service()
        incident_outcome = await service.handle_alert(ALERT)
        session = service.sessions.get(incident_outcome.session_id)
        dup = [session.candidates[0], session.candidates[0]]
        with pytest.raises(InputError):
            await service.start_escalation(session.incident, dup)
        assert len(service.sessions) == 1

    @pytest.mark.asyncio
    async def test_report(self):
        service, _ = _make_service(accepting={"far-cardiac", "heart-centre"})
        outcome = await service.handle_alert(ALERT)
        report = service.get_report(outcome.session_id).to_dict()

        assert report["report_type"] == "Escalation Report"
        assert report["status"] == "ACCEPTED"
        assert report["accepted_facility"] == "Heart Centre"
        assert report["required_capability"] == "cardiac"
        assert [c["facility_id"] for c in report["candidates"]] == ["heart-centre", "far-cardiac"]
        assert report["outcome_counts"]["accepted"] == 1
        assert report["timeline"][0]["batch"] == 1


# ---------------------------------------------------------------------------
# 4. Session storage
# ---------------------------------------------------------------------------

class SlowWebhook(ChannelAdapter):
    kind = ChannelKind.WEBHOOK

    async def attempt_notify(self, facility, incident, timeout):
        await asyncio.sleep(60)
        return ChannelResult.accepted("accepted via webhook")


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestSessionStorage:
    def test_injected_store_is_used_even_when_empty(self):
        store = SessionStore(retention_seconds=5)
        service = EmergencyService(
            lookup=StaticRegistryLookup(_make_facilities()),
            dispatcher=EscalationDispatcher([ScriptedWebhook(set())]),
            store=store,
        )
        assert service.sessions is store

    @pytest.mark.asyncio
    async def test_cancelled_escalations_do_not_pile_up(self):
        clock = FakeClock()
        store = SessionStore(retention_seconds=60, clock=clock)
        config = ServiceConfig(
            dispatch=DispatchConfig(per_channel_timeout=120, acceptance_window=120)
        )
        service = EmergencyService(
            lookup=StaticRegistryLookup(_make_facilities()),
            dispatcher=EscalationDispatcher([SlowWebhook()], config.dispatch),
            config=config,
            store=store,
        )
        incident = Incident.from_alert(ALERT)
        found = await service.find_candidates(12.9716, 77.5946)
        ranked = rank(found, incident.location)

        tasks = [asyncio.create_task(service.start_escalation(incident, ranked)) for _ in range(3)]
        await asyncio.sleep(0.05)
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, asyncio.CancelledError) for r in results)
        assert len(store) == 3

        clock.now = 1_000_000
        store.create(incident, [])
        assert len(store) == 1
