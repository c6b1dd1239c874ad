"""
Vitals Triage -- capability requirement for an incident.

Maps the vital-sign snapshot sent by the wearable to the capability tag a
facility should carry (currently only ``cardiac``) and a human-readable list
of reasons.  The on-device detector has already decided that this *is* an
emergency; triage only decides *what kind of facility* to look for.

The rule set follows the device alarm:

* irregular rhythm reported by the device          -> ``cardiac``
* heart rate above ``tachycardia_bpm`` (120)        -> ``cardiac``
* heart rate below ``bradycardia_bpm`` (40)         -> ``cardiac``
* SpO2 below ``min_spo2`` (90)                      -> critical, no tag

A snapshot without a heart rate is judged on the other signs alone.

DISCLAIMER: This is routing logic for the notification protocol, not a
clinical assessment.
"""

from __future__ import annotations

from typing import Optional

from pulseresq.config import TriageThresholds
from pulseresq.models import VitalSigns

CARDIAC = "cardiac"


class TriageResult:
    """Capability requirement derived from a vitals snapshot."""

    def __init__(
        self,
        required_capability: Optional[str],
        critical: bool,
        reasons: list[str],
    ) -> None:
        self.required_capability = required_capability
        self.critical = critical
        self.reasons = reasons

    def __repr__(self) -> str:
        return (
            f"TriageResult(required_capability={self.required_capability!r}, "
            f"critical={self.critical}, reasons={self.reasons})"
        )


def assess_vitals(
    vitals: VitalSigns,
    thresholds: TriageThresholds | None = None,
) -> TriageResult:
    """Derive the capability requirement for an incident.

    Args:
        vitals: The snapshot taken when the alarm fired.
        thresholds: Limits to apply; defaults to ``TriageThresholds()``.

    Returns:
        A ``TriageResult``.  ``required_capability`` is None when nothing in
        the vitals points at a specific kind of facility.
    """
    thresholds = thresholds or TriageThresholds()
    capability: Optional[str] = None
    critical = False
    reasons: list[str] = []

    if vitals.irregular_rhythm:
        capability = CARDIAC
        critical = True
        reasons.append("Device reported an irregular rhythm.")

    heart_rate = vitals.heart_rate
    if heart_rate is not None and heart_rate > thresholds.tachycardia_bpm:
        capability = CARDIAC
        critical = True
        reasons.append(
            f"Heart rate ({heart_rate:g} bpm) above "
            f"{thresholds.tachycardia_bpm:g} bpm."
        )
    elif heart_rate is not None and heart_rate < thresholds.bradycardia_bpm:
        capability = CARDIAC
        critical = True
        reasons.append(
            f"Heart rate ({heart_rate:g} bpm) below "
            f"{thresholds.bradycardia_bpm:g} bpm."
        )

    if vitals.spo2 is not None and vitals.spo2 < thresholds.min_spo2:
        critical = True
        reasons.append(
            f"SpO2 ({vitals.spo2:g}%) below {thresholds.min_spo2:g}%."
        )

    if not reasons:
        reasons.append("Vitals within configured limits; any facility may respond.")

    return TriageResult(required_capability=capability, critical=critical, reasons=reasons)
