"""
Facility Lookup -- where candidate facilities come from.

The dispatcher only consumes ``Facility`` objects; this module supplies
them.  Lookups share one coroutine contract::

    await lookup.find(origin, radius_m) -> list[Facility]

and raise ``LookupFailure`` when their data source is unavailable.

* ``OverpassLookup``       -- live OpenStreetMap hospitals through the
  Overpass API (nodes, ways and relations tagged ``amenity=hospital``).
* ``StaticRegistryLookup`` -- a pre-seeded registry loaded from a YAML or
  JSON file, filtered by distance.  Used as the fallback when the live
  source is down, and the only source that can carry webhook endpoints.
* ``CachingLookup``        -- a scoped time-to-live cache in front of any
  lookup.  Expiry is checked when an entry is read.
* ``FallbackLookup``       -- tries a primary lookup and falls back to a
  secondary one when the primary fails or finds nothing.
* ``AddressEnrichingLookup`` -- gives facilities without an OSM address one
  from ``ReverseGeocoder`` (Nominatim), cached like lookup results.

Capability tags for OSM hospitals are inferred from their names and tag
values (``cardio``, ``heart``, ``coronary``...), since OSM has no standard
capability field.
"""

from __future__ import annotations

import abc
import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import yaml

from pulseresq.config import LookupSettings
from pulseresq.errors import InputError, LookupFailure
from pulseresq.geo import distance_km
from pulseresq.models import ContactChannels, Coordinate, Facility

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Capability inference
# ---------------------------------------------------------------------------

CAPABILITY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "cardiac": (
        "cardio",
        "cardiac",
        "heart",
        "cardiology",
        "coronary",
        "cath lab",
        "cardiothoracic",
    ),
}


def infer_capabilities(name: str, tags: dict[str, Any]) -> set[str]:
    """Infer capability tags from a facility name and its OSM tag values."""
    texts = [name.lower()] if name else []
    texts.extend(v.lower() for v in tags.values() if isinstance(v, str))
    return {
        capability
        for capability, keywords in CAPABILITY_KEYWORDS.items()
        if any(kw in text for text in texts for kw in keywords)
    }


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class FacilityLookup(abc.ABC):
    """A source of candidate facilities around a coordinate."""

    @abc.abstractmethod
    async def find(self, origin: Coordinate, radius_m: int) -> list[Facility]:
        """Return facilities within ``radius_m`` metres of ``origin``.

        Raises:
            LookupFailure: If the data source is unavailable.
        """


# ---------------------------------------------------------------------------
# Overpass (OpenStreetMap)
# ---------------------------------------------------------------------------

def build_overpass_query(origin: Coordinate, radius_m: int) -> str:
    lat, lon = origin.latitude, origin.longitude
    around = f"around:{radius_m},{lat},{lon}"
    return (
        "[out:json][timeout:25];\n"
        "(\n"
        f'  node["amenity"="hospital"]({around});\n'
        f'  way["amenity"="hospital"]({around});\n'
        f'  relation["amenity"="hospital"]({around});\n'
        ");\n"
        "out center tags;"
    )


def _first_contact(tags: dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = tags.get(key)
        if isinstance(value, str) and value.strip():
            # OSM separates multiple values with ';'
            return value.split(";")[0].strip()
    return None


def _osm_address(tags: dict[str, Any]) -> Optional[str]:
    """``addr:full``, else street line plus city and postcode.  None without a street."""
    def text(key: str) -> str:
        value = tags.get(key)
        return value.strip() if isinstance(value, str) else ""

    if text("addr:full"):
        return text("addr:full")
    if not text("addr:street"):
        return None
    street = " ".join(p for p in (text("addr:housenumber"), text("addr:street")) if p)
    return ", ".join(p for p in (street, text("addr:city"), text("addr:postcode")) if p)


def parse_overpass_elements(elements: list[dict[str, Any]]) -> list[Facility]:
    """Convert Overpass ``elements`` into facilities.

    Ways and relations carry their position in ``center``.  Elements with
    no usable position are skipped.
    """
    facilities: list[Facility] = []
    for el in elements:
        if not isinstance(el, dict):
            continue
        center = el.get("center") or {}
        lat = el.get("lat", center.get("lat"))
        lon = el.get("lon", center.get("lon"))
        if lat is None or lon is None or "id" not in el:
            continue

        tags = el.get("tags") or {}
        name = tags.get("name") or tags.get("operator") or "Unknown Hospital"
        try:
            facilities.append(Facility(
                facility_id=f"osm:{el.get('type', 'node')}/{el['id']}",
                name=name,
                location=Coordinate(latitude=lat, longitude=lon),
                channels=ContactChannels(
                    phone=_first_contact(tags, "contact:phone", "phone", "emergency:phone"),
                    email=_first_contact(tags, "contact:email", "email"),
                ),
                capabilities=infer_capabilities(name, tags),
                address=_osm_address(tags),
            ))
        except ValueError as exc:
            logger.debug("Skipping malformed Overpass element %s: %s", el.get("id"), exc)
    return facilities


class OverpassLookup(FacilityLookup):
    """Hospitals from the public Overpass API."""

    def __init__(
        self,
        settings: LookupSettings | None = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings or LookupSettings()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._settings.request_timeout,
                headers={"User-Agent": self._settings.user_agent},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def find(self, origin: Coordinate, radius_m: int) -> list[Facility]:
        query = build_overpass_query(origin, radius_m)
        try:
            resp = await self._get_client().post(
                self._settings.overpass_url,
                data={"data": query},
                headers={"User-Agent": self._settings.user_agent},
                timeout=self._settings.request_timeout,
            )
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPError as exc:
            raise LookupFailure(f"Overpass request failed: {exc}") from exc
        except ValueError as exc:
            raise LookupFailure("Overpass returned malformed JSON") from exc

        if not isinstance(payload, dict):
            raise LookupFailure("Overpass returned an unexpected body")
        facilities = parse_overpass_elements(payload.get("elements") or [])
        logger.info(
            "Overpass found %d hospitals within %dm of (%.5f, %.5f)",
            len(facilities),
            radius_m,
            origin.latitude,
            origin.longitude,
        )
        return facilities


# ---------------------------------------------------------------------------
# Static registry
# ---------------------------------------------------------------------------

class StaticRegistryLookup(FacilityLookup):
    """A fixed list of facilities, filtered by distance on each lookup."""

    def __init__(self, facilities: list[Facility]) -> None:
        self._facilities = list(facilities)

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticRegistryLookup":
        """Load a registry from YAML or JSON.

        Either a bare list of entries or a mapping with a ``facilities``
        list.  Each entry uses the lookup output shape::

            facilities:
              - id: "city-care"
                name: "City Care Hospital"
                lat: 12.9716
                lon: 77.5946
                tags: [cardiac]
                channels:
                  webhook: "http://localhost:4000/alert"
                  phone: "+15550100"

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the structure or any entry is invalid.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Facility registry not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        if isinstance(raw, dict):
            raw = raw.get("facilities")
        if not isinstance(raw, list):
            raise ValueError(
                "Registry must be a list of facilities or contain a 'facilities' list."
            )

        facilities: list[Facility] = []
        for idx, entry in enumerate(raw):
            try:
                facilities.append(Facility.from_dict(entry))
            except InputError as exc:
                raise ValueError(f"Registry entry at index {idx} is invalid: {exc}") from exc
        return cls(facilities)

    async def find(self, origin: Coordinate, radius_m: int) -> list[Facility]:
        radius_km = radius_m / 1000.0
        return [
            f for f in self._facilities
            if distance_km(origin, f.location) <= radius_km
        ]

    def __len__(self) -> int:
        return len(self._facilities)


# ---------------------------------------------------------------------------
# Caching and fallback
# ---------------------------------------------------------------------------

class TTLCache:
    """Small time-to-live cache.  Entries are checked for expiry when read."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[Any, tuple[float, Any]] = {}

    def get(self, key: Any) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self._ttl:
            del self._entries[key]
            return None
        return value

    def set(self, key: Any, value: Any) -> None:
        if self._ttl <= 0:
            return
        self._entries[key] = (self._clock(), value)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class CachingLookup(FacilityLookup):
    """Reuses recent results from an inner lookup for nearby queries.

    Keys round coordinates to 4 decimal places (about 11 m).
    """

    def __init__(
        self,
        inner: FacilityLookup,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._inner = inner
        self.cache = TTLCache(ttl_seconds, clock)

    async def find(self, origin: Coordinate, radius_m: int) -> list[Facility]:
        key = (round(origin.latitude, 4), round(origin.longitude, 4), radius_m)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Lookup cache hit for %s", key)
            return list(cached)
        facilities = await self._inner.find(origin, radius_m)
        self.cache.set(key, tuple(facilities))
        return facilities


class FallbackLookup(FacilityLookup):
    """Primary lookup with a fallback for failures and empty results."""

    def __init__(self, primary: FacilityLookup, fallback: FacilityLookup) -> None:
        self._primary = primary
        self._fallback = fallback

    async def find(self, origin: Coordinate, radius_m: int) -> list[Facility]:
        try:
            facilities = await self._primary.find(origin, radius_m)
        except LookupFailure as exc:
            logger.warning("Primary facility lookup failed (%s); using fallback registry", exc)
            return await self._fallback.find(origin, radius_m)
        if not facilities:
            logger.info("Primary facility lookup found nothing; using fallback registry")
            return await self._fallback.find(origin, radius_m)
        return facilities


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------

class ReverseGeocoder:
    """Street addresses for coordinates from a Nominatim ``/reverse`` endpoint.

    Answers are kept in a ``TTLCache`` for ``cache_ttl_seconds``, keyed by
    the coordinate rounded to 5 decimal places.
    """

    def __init__(
        self,
        settings: LookupSettings | None = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or LookupSettings()
        self._client = client
        self._owns_client = client is None
        self.cache = TTLCache(self._settings.cache_ttl_seconds, clock)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._settings.request_timeout,
                headers={"User-Agent": self._settings.user_agent},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def reverse_geocode(self, point: Coordinate) -> Optional[str]:
        """The display address at ``point``, or None if Nominatim has none.

        Raises:
            LookupFailure: If the request fails or the body is not JSON.
        """
        key = (round(point.latitude, 5), round(point.longitude, 5))
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        try:
            resp = await self._get_client().get(
                self._settings.nominatim_url,
                params={"format": "jsonv2", "lat": point.latitude, "lon": point.longitude},
                headers={"User-Agent": self._settings.user_agent},
                timeout=self._settings.request_timeout,
            )
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPError as exc:
            raise LookupFailure(f"Reverse geocoding failed: {exc}") from exc
        except ValueError as exc:
            raise LookupFailure("Nominatim returned malformed JSON") from exc

        address = payload.get("display_name") if isinstance(payload, dict) else None
        if not isinstance(address, str) or not address.strip():
            return None
        self.cache.set(key, address)
        return address


class AddressEnrichingLookup(FacilityLookup):
    """Fills in missing addresses of an inner lookup's facilities.

    Only the ``limit`` closest facilities without an address are geocoded,
    one request at a time.  A failed request leaves that address unset.
    """

    def __init__(
        self,
        inner: FacilityLookup,
        geocoder: ReverseGeocoder,
        limit: int = 5,
    ) -> None:
        self._inner = inner
        self._geocoder = geocoder
        self._limit = limit

    async def find(self, origin: Coordinate, radius_m: int) -> list[Facility]:
        facilities = await self._inner.find(origin, radius_m)
        missing = sorted(
            (f for f in facilities if f.address is None),
            key=lambda f: distance_km(origin, f.location),
        )[: self._limit]

        addresses: dict[str, str] = {}
        for facility in missing:
            try:
                address = await self._geocoder.reverse_geocode(facility.location)
            except LookupFailure as exc:
                logger.warning("No address for %s: %s", facility.facility_id, exc)
                continue
            if address:
                addresses[facility.facility_id] = address

        return [
            f.model_copy(update={"address": addresses[f.facility_id]})
            if f.facility_id in addresses else f
            for f in facilities
        ]


def build_default_lookup(
    settings: LookupSettings,
    client: Optional[httpx.AsyncClient] = None,
) -> FacilityLookup:
    """Overpass behind a TTL cache, with the registry file as fallback if set.

    With ``reverse_geocode`` on, Overpass results are given addresses before
    they are cached.
    """
    source: FacilityLookup = OverpassLookup(settings, client)
    if settings.reverse_geocode:
        source = AddressEnrichingLookup(
            source, ReverseGeocoder(settings, client), settings.reverse_geocode_limit
        )
    lookup: FacilityLookup = CachingLookup(source, settings.cache_ttl_seconds)
    if settings.registry_path is not None:
        lookup = FallbackLookup(lookup, StaticRegistryLookup.from_file(settings.registry_path))
    return lookup
