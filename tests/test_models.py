"""
Tests for pulseresq.models -- Core data models.

Covers: coordinate validation, contact channel normalization and address
lookup, facility parsing from the lookup shape, alert payload parsing,
patient payload shape, and immutability.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from pulseresq.errors import InputError
from pulseresq.models import (
    ChannelKind,
    ContactChannels,
    Coordinate,
    Facility,
    Incident,
)


# ---------------------------------------------------------------------------
# 1. Coordinates
# ---------------------------------------------------------------------------

class TestCoordinate:
    def test_valid(self):
        c = Coordinate.of("12.9716", 77.5946)
        assert c.latitude == pytest.approx(12.9716)

    @pytest.mark.parametrize("lat,lon", [(91, 0), (-91, 0), (0, 181), (0, -181), ("north", 0)])
    def test_out_of_range(self, lat, lon):
        with pytest.raises(InputError):
            Coordinate.of(lat, lon)

    def test_missing(self):
        with pytest.raises(InputError, match="required"):
            Coordinate.of(None, 1.0)

    def test_input_error_is_value_error(self):
        with pytest.raises(ValueError):
            Coordinate.of(100, 0)


# ---------------------------------------------------------------------------
# 2. Contact channels
# ---------------------------------------------------------------------------

class TestContactChannels:
    def test_blank_is_missing(self):
        channels = ContactChannels(webhook="  ", phone="", email=None)
        assert channels.webhook is None
        assert channels.phone is None

    def test_webhook_must_be_http(self):
        with pytest.raises(ValidationError):
            ContactChannels(webhook="ftp://hospital.test/alert")

    def test_phone_serves_three_channels(self):
        channels = ContactChannels(phone="+15550100")
        for kind in (ChannelKind.SMS, ChannelKind.WHATSAPP, ChannelKind.VOICE):
            assert channels.address_for(kind) == "+15550100"
        assert channels.address_for(ChannelKind.WEBHOOK) is None

    def test_available_respects_order(self):
        channels = ContactChannels(webhook="https://h.test/a", email="er@h.test")
        order = [ChannelKind.EMAIL, ChannelKind.SMS, ChannelKind.WEBHOOK]
        assert channels.available(order) == [ChannelKind.EMAIL, ChannelKind.WEBHOOK]


# ---------------------------------------------------------------------------
# 3. Facilities
# ---------------------------------------------------------------------------

class TestFacility:
    def test_from_dict_round_trip_shape(self):
        data = {
            "id": "city-care",
            "name": "City Care Hospital",
            "lat": 12.9716,
            "lon": 77.5946,
            "tags": ["Cardiac", " trauma "],
            "channels": {"webhook": "http://localhost:4000/alert"},
        }
        facility = Facility.from_dict(data)
        assert facility.capabilities == frozenset({"cardiac", "trauma"})
        assert facility.to_dict() == {
            "id": "city-care",
            "name": "City Care Hospital",
            "lat": 12.9716,
            "lon": 77.5946,
            "tags": ["cardiac", "trauma"],
            "channels": {"webhook": "http://localhost:4000/alert"},
        }

    def test_address_carried_through(self):
        facility = Facility.from_dict({
            "id": "x", "lat": 0, "lon": 0, "address": "12 MG Road, Bengaluru",
        })
        assert facility.address == "12 MG Road, Bengaluru"
        assert facility.to_dict()["address"] == "12 MG Road, Bengaluru"
        assert "address" not in Facility.from_dict({"id": "y", "lat": 0, "lon": 0}).to_dict()

    def test_missing_name_defaults(self):
        facility = Facility.from_dict({"id": 7, "lat": 0, "lon": 0})
        assert facility.facility_id == "7"
        assert facility.name == "Unknown Hospital"

    @pytest.mark.parametrize("entry", [
        {"name": "no id", "lat": 0, "lon": 0},
        {"id": "x", "lat": 100, "lon": 0},
        {"id": "x", "lat": 0},
        "not a mapping",
    ])
    def test_invalid_entries(self, entry):
        with pytest.raises(InputError):
            Facility.from_dict(entry)

    def test_frozen(self):
        facility = Facility.from_dict({"id": "x", "lat": 0, "lon": 0})
        with pytest.raises(ValidationError):
            facility.name = "changed"


# ---------------------------------------------------------------------------
# 4. Incidents
# ---------------------------------------------------------------------------

class TestIncident:
    def test_from_alert(self):
        incident = Incident.from_alert({
            "device_id": "PRQ-001",
            "location": {"lat": 12.9716, "lon": 77.5946},
            "heart_rate": 134,
            "spo2": 93,
            "ecg": [0.1, 0.2],
            "irregular_rhythm": True,
        })
        assert incident.device_id == "PRQ-001"
        assert incident.vitals.ecg_excerpt == (0.1, 0.2)
        assert incident.vitals.irregular_rhythm is True
        assert incident.required_capability is None
        assert len(incident.incident_id) == 36

    def test_single_ecg_value_accepted(self):
        incident = Incident.from_alert({
            "device_id": "PRQ-001", "location": {"lat": 1, "lon": 2},
            "heart_rate": 90, "ecg": 0.8,
        })
        assert incident.vitals.ecg_excerpt == (0.8,)

    @pytest.mark.parametrize("payload", [
        {"location": {"lat": 1, "lon": 2}, "heart_rate": 90},
        {"device_id": "PRQ-001", "heart_rate": 90},
        {"device_id": "PRQ-001", "location": {"lat": 1, "lon": 2}, "heart_rate": -5},
        {"device_id": "PRQ-001", "location": {"lat": 1, "lon": 2}, "irregular_rhythm": "maybe"},
        {"device_id": "PRQ-001", "location": "somewhere", "heart_rate": 90},
        ["not", "a", "mapping"],
    ])
    def test_invalid_alerts(self, payload):
        with pytest.raises(InputError):
            Incident.from_alert(payload)

    def test_alert_without_heart_rate(self):
        incident = Incident.from_alert({
            "device_id": "PRQ-001",
            "location": {"lat": 1, "lon": 2},
            "ecg": [0.1, 0.2],
            "spo2": 95,
        })
        assert incident.vitals.heart_rate is None
        assert incident.vitals.spo2 == 95

    @pytest.mark.parametrize("flag,expected", [
        ("false", False), ("0", False), ("true", True), (1, True), (None, False),
    ])
    def test_irregular_rhythm_flag_parsing(self, flag, expected):
        incident = Incident.from_alert({
            "device_id": "PRQ-001", "location": {"lat": 1, "lon": 2},
            "heart_rate": 80, "irregular_rhythm": flag,
        })
        assert incident.vitals.irregular_rhythm is expected

    def test_with_required_capability_copies(self):
        incident = Incident.from_alert({
            "device_id": "PRQ-001", "location": {"lat": 1, "lon": 2}, "heart_rate": 150,
        })
        tagged = incident.with_required_capability("cardiac")
        assert tagged.required_capability == "cardiac"
        assert incident.required_capability is None
        assert tagged.incident_id == incident.incident_id

    def test_patient_payload(self):
        incident = Incident.from_alert({
            "device_id": "PRQ-001", "location": {"lat": 1.5, "lon": 2.5}, "heart_rate": 150,
        })
        payload = incident.patient_payload()
        assert payload["device_id"] == "PRQ-001"
        assert payload["location"] == {"lat": 1.5, "lon": 2.5}
        assert payload["ecg"] == []
        assert payload["incident_id"] == incident.incident_id
