"""
Simulated Emergency: Cardiac Alert Walkthrough
==============================================

This script runs the full PulseResQ escalation pipeline in-process using
synthetic data.  No network calls are made: facilities come from the
bundled registry and hospitals are simulated by in-process channel
adapters.

Steps demonstrated:
  1. Load the service configuration and facility registry from YAML
  2. Receive a synthetic wearable alert with abnormal vitals
  3. Triage, look up and rank candidate facilities
  4. Escalate batch by batch until a hospital accepts
  5. Generate an Escalation Report
  6. Export the attempt log for review

DISCLAIMER: This is a synthetic demonstration.  All hospitals, phone
numbers and patients are fictional.

Usage:
    python examples/simulated_emergency.py
"""

from __future__ import annotations

import asyncio
import json
import random
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pulseresq.channels import ChannelAdapter, ChannelResult, format_alert_message
from pulseresq.config import load_config_from_yaml
from pulseresq.dispatcher import EscalationDispatcher
from pulseresq.logging_config import setup_logging
from pulseresq.lookup import StaticRegistryLookup
from pulseresq.models import ChannelKind
from pulseresq.service import EmergencyService


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


class SimulatedHospitalDesk(ChannelAdapter):
    """Stands in for the hospitals' webhook receivers.

    Each hospital answers after a short random delay and either accepts or
    declines according to ``accepts``.
    """

    kind = ChannelKind.WEBHOOK

    def __init__(self, accepts: dict[str, bool], rng: random.Random) -> None:
        self._accepts = accepts
        self._rng = rng

    async def attempt_notify(self, facility, incident, timeout):
        await asyncio.sleep(0.1 + self._rng.random() * 0.3)
        if self._accepts.get(facility.facility_id, False):
            print(f"  [desk] {facility.name} accepted the case")
            return ChannelResult.accepted("accepted via webhook")
        print(f"  [desk] {facility.name} declined the alert")
        return ChannelResult.declined("facility declined via webhook")


class PrintingSms(ChannelAdapter):
    """Prints the SMS instead of sending it.  Delivery is not an answer."""

    kind = ChannelKind.SMS

    async def attempt_notify(self, facility, incident, timeout):
        print(f"  [sms]  to {facility.channels.phone}: {format_alert_message(incident, facility)}")
        return ChannelResult.declined("sms sent (simulated); no acknowledgment channel")


async def run() -> None:
    _banner("PulseResQ Simulated Emergency")
    print("DISCLAIMER: All data in this demo is entirely synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Configuration and registry
    # ------------------------------------------------------------------
    _banner("Step 1: Load Configuration")

    config = load_config_from_yaml(Path(__file__).parent / "pulseresq.yaml")
    registry = StaticRegistryLookup.from_file(config.lookup.registry_path)
    print(f"Dispatch: {config.dispatch.model_dump(mode='json')}")
    print(f"Registry: {len(registry)} facilities from {config.lookup.registry_path.name}")

    desk = SimulatedHospitalDesk(
        accepts={"apollo-heart": False, "fortis-cardiac": True, "city-care": True},
        rng=random.Random(7),
    )
    service = EmergencyService(
        lookup=registry,
        dispatcher=EscalationDispatcher([desk, PrintingSms()], config.dispatch),
        config=config,
    )

    # ------------------------------------------------------------------
    # Step 2: Alert
    # ------------------------------------------------------------------
    _banner("Step 2: Wearable Alert")

    alert = {
        "device_id": "PRQ-DEMO-001",
        "location": {"lat": 12.9716, "lon": 77.5946},
        "heart_rate": 148,
        "spo2": 91,
        "ecg": [0.12, 0.48, 1.31, 0.22, -0.15],
        "irregular_rhythm": True,
    }
    print(json.dumps(alert, indent=2))

    # ------------------------------------------------------------------
    # Step 3-4: Triage, rank and escalate
    # ------------------------------------------------------------------
    _banner("Step 3: Escalation")

    outcome = await service.handle_alert(alert)
    print(f"\nOutcome: {outcome.status.value}")
    if outcome.facility is not None:
        print(f"  Accepted by: {outcome.facility.name} ({outcome.facility.facility_id})")
        if outcome.facility.address:
            print(f"  Address: {outcome.facility.address}")
    print(f"  Attempts recorded: {len(outcome.attempts)}")

    # ------------------------------------------------------------------
    # Step 5: Report
    # ------------------------------------------------------------------
    _banner("Step 4: Escalation Report")

    report = service.get_report(outcome.session_id)
    print(json.dumps(report.to_dict(), indent=2, default=str))

    # ------------------------------------------------------------------
    # Step 6: Attempt log export
    # ------------------------------------------------------------------
    _banner("Step 5: Attempt Log Export")

    session = service.sessions.get(outcome.session_id)
    export = session.attempt_log.export_for_review()
    print(json.dumps(export["export_metadata"], indent=2))
    valid, broken_at = session.attempt_log.verify_chain()
    print(f"\nChain verification: valid={valid}, broken_at={broken_at}")

    _banner("Scenario Complete")


def main() -> None:
    setup_logging("INFO")
    asyncio.run(run())


if __name__ == "__main__":
    main()
