"""
Facility Ranking Engine.

Turns the raw candidate list returned by a facility lookup into an ordered,
deduplicated list of ``RankedCandidate`` objects, closest first.

**Capability relaxation policy:**  when the incident requires a capability
(e.g. ``cardiac``) the candidates lacking it are dropped -- unless that would
leave nobody to call.  In that case the filter is relaxed and the whole
list is ranked instead.  An emergency with *some* reachable facility is
never answered with an empty list.  Notifying a facility that lacks the
capability is a clinical policy decision; it is logged at WARNING every
time it happens so it can be reviewed.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from pulseresq.geo import distance_km
from pulseresq.models import Coordinate, Facility, RankedCandidate

logger = logging.getLogger(__name__)


def dedupe_facilities(candidates: Iterable[Facility]) -> list[Facility]:
    """Collapse duplicate facility ids, keeping the first occurrence.

    Overlapping geo queries (node + way for the same hospital, or a live
    lookup merged with the fallback registry) routinely return the same
    facility twice.
    """
    seen: set[str] = set()
    unique: list[Facility] = []
    for facility in candidates:
        if facility.facility_id in seen:
            continue
        seen.add(facility.facility_id)
        unique.append(facility)
    return unique


def filter_by_capability(
    candidates: list[Facility],
    required_capability: Optional[str],
) -> tuple[list[Facility], bool]:
    """Apply the capability filter with relaxation.

    Args:
        candidates: Facilities to filter.
        required_capability: Tag every kept facility must carry, or None.

    Returns:
        A tuple of ``(facilities, relaxed)``.  ``relaxed`` is True when no
        candidate carried the tag and the unfiltered list was returned.
    """
    if not required_capability or not candidates:
        return list(candidates), False

    capable = [f for f in candidates if f.has_capability(required_capability)]
    if capable:
        return capable, False

    logger.warning(
        "No candidate carries capability '%s'; relaxing filter to all %d candidates",
        required_capability,
        len(candidates),
    )
    return list(candidates), True


def rank(
    candidates: list[Facility],
    origin: Coordinate,
    required_capability: Optional[str] = None,
) -> list[RankedCandidate]:
    """Rank candidate facilities around an origin.

    Duplicates are collapsed first, then the capability filter is applied
    (see module docstring for the relaxation rule), then the survivors are
    sorted by haversine distance, ties broken by facility id.

    Args:
        candidates: Raw facilities from the lookup, possibly with duplicates.
        origin: Incident location.
        required_capability: Optional capability tag.

    Returns:
        Ranked candidates, closest first.  Empty only when ``candidates``
        is empty.
    """
    unique = dedupe_facilities(candidates)
    kept, _ = filter_by_capability(unique, required_capability)

    measured = [(distance_km(origin, f.location), f) for f in kept]
    measured.sort(key=lambda pair: (pair[0], pair[1].facility_id))

    return [
        RankedCandidate(facility=facility, distance_km=distance, rank=idx)
        for idx, (distance, facility) in enumerate(measured)
    ]
