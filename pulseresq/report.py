"""
Escalation Report Generator.

Summarizes a session for whoever reviews the escalation afterwards: the
incident, the ranked candidates, a per-batch timeline of every channel
attempt, and the outcome.  Contact details in attempt details are redacted
the same way as in attempt-log exports.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pulseresq.audit import redact_contact_details
from pulseresq.models import AttemptOutcome
from pulseresq.session import EscalationSession


class EscalationReport:
    """A structured summary of one escalation session."""

    def __init__(
        self,
        session_id: str,
        incident_id: str,
        device_id: str,
        status: str,
        accepted_facility: Optional[str],
        accepted_address: Optional[str],
        required_capability: Optional[str],
        candidates: list[dict[str, Any]],
        timeline: list[dict[str, Any]],
        outcome_counts: dict[str, int],
        generated_at: str,
    ) -> None:
        self.session_id = session_id
        self.incident_id = incident_id
        self.device_id = device_id
        self.status = status
        self.accepted_facility = accepted_facility
        self.accepted_address = accepted_address
        self.required_capability = required_capability
        self.candidates = candidates
        self.timeline = timeline
        self.outcome_counts = outcome_counts
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to a dictionary."""
        return {
            "report_type": "Escalation Report",
            "session_id": self.session_id,
            "incident_id": self.incident_id,
            "device_id": self.device_id,
            "status": self.status,
            "accepted_facility": self.accepted_facility,
            "accepted_address": self.accepted_address,
            "required_capability": self.required_capability,
            "candidates": self.candidates,
            "timeline": self.timeline,
            "outcome_counts": self.outcome_counts,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"EscalationReport(session_id={self.session_id}, status={self.status}, "
            f"attempts={len(self.timeline)})"
        )


def generate_escalation_report(session: EscalationSession) -> EscalationReport:
    """Build an ``EscalationReport`` from a session (running or finished)."""
    names = {c.facility_id: c.facility.name for c in session.candidates}
    candidates = [
        {
            "rank": c.rank,
            "facility_id": c.facility_id,
            "name": c.facility.name,
            "address": c.facility.address,
            "distance_km": round(c.distance_km, 3),
        }
        for c in session.candidates
    ]

    counts = {outcome.value: 0 for outcome in AttemptOutcome}
    timeline: list[dict[str, Any]] = []
    for record in session.attempts():
        counts[record.outcome.value] += 1
        timeline.append({
            "timestamp": record.timestamp.isoformat(),
            "batch": record.batch_index + 1,
            "facility": names.get(record.facility_id, record.facility_id),
            "channel": record.channel.value if record.channel else None,
            "outcome": record.outcome.value,
            "detail": redact_contact_details(record.detail),
        })

    accepted = session.accepted_facility
    return EscalationReport(
        session_id=session.session_id,
        incident_id=session.incident.incident_id,
        device_id=session.incident.device_id,
        status=session.status.value,
        accepted_facility=accepted.name if accepted else None,
        accepted_address=accepted.address if accepted else None,
        required_capability=session.incident.required_capability,
        candidates=candidates,
        timeline=timeline,
        outcome_counts=counts,
        generated_at=datetime.now(timezone.utc).isoformat(),
    )
