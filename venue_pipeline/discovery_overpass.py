"""Discovery source backed by the OpenStreetMap Overpass API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Mapping, Sequence
from urllib.parse import urlparse

import httpx

from .cache import CacheKeys, TTLCache
from .models import CandidateRecord, Coordinates

logger = logging.getLogger(__name__)

OVERPASS_URL = "https://overpass-api.de/api/interpreter"
DEFAULT_AMENITIES = ("restaurant", "fast_food", "cafe")
WEBSITE_TAG_KEYS = ("website", "contact:website", "url")
PHONE_TAG_KEYS = ("phone", "contact:phone")
SOURCE_NAME = "openstreetmap-overpass"

AREA_TTL_SECONDS = 7 * 24 * 3600
AREA_MISS_TTL_SECONDS = 24 * 3600

# Overpass derives area ids from relation ids by this fixed offset.
AREA_ID_OFFSET = 3_600_000_000


class OverpassError(RuntimeError):
    """Raised when the Overpass API returns an unexpected response."""


def normalize_overpass_urls(
    overpass_url: str | None = None,
    overpass_urls: Sequence[str] | None = None,
    *,
    fallback: str | None = OVERPASS_URL,
) -> list[str]:
    """Endpoints to try in order: the list first, then the single URL.

    Blank entries and repeats are dropped. ``fallback`` is used when nothing
    usable remains; pass ``None`` to get an empty list instead.
    """

    raw = [*(overpass_urls or ()), overpass_url or ""]
    urls = list(dict.fromkeys(url.strip() for url in raw if url and url.strip()))
    if not urls and fallback:
        urls.append(fallback)
    return urls


def build_query(
    area_relation_id: int,
    amenities: Iterable[str],
    *,
    name_pattern: str | None = None,
) -> str:
    """Build an Overpass QL query for named venues inside an area."""

    amenity_patterns = sorted({a.strip() for a in amenities if a.strip()})
    if not amenity_patterns:
        raise ValueError("At least one amenity must be provided")

    amenity_regex = "|".join(amenity_patterns)
    name_filter = f'["name"~"{name_pattern}",i]' if name_pattern else '["name"]'
    area_id = AREA_ID_OFFSET + area_relation_id
    query = f"""
[out:json][timeout:60];
area({area_id})->.searchArea;
(
  node["amenity"~"^({amenity_regex})$"]{name_filter}(area.searchArea);
  way["amenity"~"^({amenity_regex})$"]{name_filter}(area.searchArea);
  relation["amenity"~"^({amenity_regex})$"]{name_filter}(area.searchArea);
);
out center tags;
"""
    return "\n".join(line.rstrip() for line in query.strip().splitlines()) + "\n"


def _rank_relation(elem: Mapping[str, Any]) -> int:
    """Prefer city-level administrative relations with short exact names."""

    tags = elem.get("tags", {}) or {}
    score = 0
    admin_level = str(tags.get("admin_level", "")).strip()
    if admin_level in {"6", "7", "8"}:
        score += 5
    elif admin_level in {"4", "5"}:
        score += 2
    if tags.get("boundary") == "administrative":
        score += 2
    name_len = len((tags.get("name") or "").strip())
    score += max(0, 20 - min(20, name_len))
    return score


def select_website(tags: Mapping[str, str]) -> str | None:
    """Return the best website URL from the element tags, if any."""

    for key in WEBSITE_TAG_KEYS:
        value = (tags.get(key) or "").strip()
        if not value:
            continue
        # Some entries contain multiple URLs separated by ; or ,
        for delimiter in (";", ",", " "):
            if delimiter in value:
                value = value.split(delimiter)[0].strip()
        if value:
            return normalize_website(value)
    return None


def normalize_website(url: str) -> str:
    url = url.strip()
    if not url:
        return url
    if urlparse(url).scheme:
        return url
    if url.startswith("//"):
        return f"https:{url}"
    return f"https://{url}"


def build_address(tags: Mapping[str, str], area: str | None = None) -> str:
    """Assemble a postal address from ``addr:*`` tags."""

    street = " ".join(
        part for part in (tags.get("addr:housenumber"), tags.get("addr:street")) if part
    )
    parts = [
        street or tags.get("addr:place"),
        tags.get("addr:suburb"),
        tags.get("addr:city") or area,
        tags.get("addr:state"),
        tags.get("addr:country"),
    ]
    seen: set[str] = set()
    unique: list[str] = []
    for part in parts:
        if not part:
            continue
        key = part.strip().lower()
        if key and key not in seen:
            seen.add(key)
            unique.append(part.strip())
    return ", ".join(unique)


def element_to_candidate(element: Mapping[str, Any], *, area: str | None = None) -> CandidateRecord | None:
    tags = element.get("tags") or {}
    name = (tags.get("name") or "").strip()
    osm_type = element.get("type", "unknown")
    osm_id = element.get("id")
    if not name or osm_id is None:
        return None

    if "lat" in element and "lon" in element:
        lat, lon = float(element["lat"]), float(element["lon"])
    else:
        center = element.get("center")
        if not center or "lat" not in center or "lon" not in center:
            logger.debug("Skipping element without coordinates: %s/%s", osm_type, osm_id)
            return None
        lat, lon = float(center["lat"]), float(center["lon"])

    phone = next((tags[key].strip() for key in PHONE_TAG_KEYS if tags.get(key)), None)
    return CandidateRecord(
        name=name,
        address=build_address(tags, area),
        source=SOURCE_NAME,
        coordinates=Coordinates(lat=lat, lng=lon),
        source_url=f"https://www.openstreetmap.org/{osm_type}/{osm_id}",
        phone=phone,
        website=select_website(tags),
        fields={
            "osm_id": f"{osm_type}/{osm_id}",
            "amenity": tags.get("amenity") or "unknown",
            "cuisine": tags.get("cuisine"),
            "opening_hours": tags.get("opening_hours"),
        },
    )


class OverpassSource:
    """Find venues in a named area via Overpass.

    Area names are resolved to OSM relation ids once and kept in the shared
    cache; failed resolutions are cached for a shorter time.
    """

    name = SOURCE_NAME

    def __init__(
        self,
        *,
        amenities: Iterable[str] = DEFAULT_AMENITIES,
        name_pattern: str | None = None,
        overpass_url: str | None = None,
        overpass_urls: Sequence[str] | None = None,
        cache: TTLCache | None = None,
        user_agent: str = "venue-pipeline/0.1",
        attempts: int = 3,
        retry_wait: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._amenities = tuple(amenities)
        self._name_pattern = name_pattern
        self._urls = normalize_overpass_urls(overpass_url, overpass_urls)
        self._cache = cache
        self._attempts = max(1, attempts)
        self._retry_wait = retry_wait
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers={"User-Agent": user_agent},
            timeout=httpx.Timeout(60.0, connect=10.0, read=30.0),
        )

    @property
    def urls(self) -> list[str]:
        return list(self._urls)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def discover(self, area: str) -> list[CandidateRecord]:
        area = (area or "").strip()
        if not area:
            raise OverpassError("An area name is required for Overpass discovery")

        relation_id = await self.resolve_area(area)
        if not relation_id:
            raise OverpassError(
                f"Unable to resolve area '{area}'. Please use an exact OSM administrative name "
                "(e.g., 'Lagos', 'Ikeja', 'London Borough of Southwark')."
            )

        query = build_query(relation_id, self._amenities, name_pattern=self._name_pattern)
        payload = await self._post(query, description=f"venues in '{area}'")

        candidates: list[CandidateRecord] = []
        seen: set[str] = set()
        for element in payload.get("elements", []):
            candidate = element_to_candidate(element, area=area)
            if candidate is None:
                continue
            osm_id = candidate.fields["osm_id"]
            if osm_id in seen:
                continue
            seen.add(osm_id)
            candidates.append(candidate)

        logger.info("Overpass returned %d candidates for %s", len(candidates), area)
        return candidates

    async def resolve_area(self, area_name: str) -> int | None:
        """Resolve an area name to an OSM relation id, or None if nothing matches."""

        key = CacheKeys.overpass_area(area_name)
        if self._cache is not None:
            cached = self._cache.get(key)
            if cached is not None:
                return cached if cached > 0 else None

        query = f"""
[out:json][timeout:25];
relation["name"="{area_name}"]["type"~"^(boundary|administrative)$"]["admin_level"];
out ids tags;
"""
        try:
            payload = await self._post(query, description=f"area '{area_name}'")
        except OverpassError as exc:
            logger.warning("Giving up on resolving '%s': %s", area_name, exc)
            return None

        elements = payload.get("elements", [])
        relation_id = 0
        if elements:
            best = max(elements, key=_rank_relation)
            relation_id = int(best.get("id", 0) or 0)

        if relation_id > 0:
            logger.info("Resolved area '%s' to relation ID %d", area_name, relation_id)
            if self._cache is not None:
                self._cache.set(key, relation_id, AREA_TTL_SECONDS)
            return relation_id

        logger.warning("Could not resolve area '%s' to relation ID", area_name)
        if self._cache is not None:
            self._cache.set(key, 0, AREA_MISS_TTL_SECONDS)
        return None

    async def _post(self, query: str, *, description: str) -> dict[str, Any]:
        """Try every endpoint in turn, sleeping between rounds."""

        last_error: Exception | None = None
        for attempt in range(self._attempts):
            for url in self._urls:
                try:
                    response = await self._client.post(url, data={"data": query})
                    response.raise_for_status()
                    payload = response.json()
                    if not isinstance(payload, dict):
                        raise OverpassError("Overpass response was not a JSON object")
                    return payload
                except (httpx.HTTPError, ValueError, OverpassError) as exc:
                    last_error = exc
                    logger.debug(
                        "Overpass request for %s failed via %s (attempt %d): %s",
                        description,
                        url,
                        attempt + 1,
                        exc,
                    )
            if attempt < self._attempts - 1:
                await asyncio.sleep(min(self._retry_wait * (attempt + 1), 5.0))

        raise OverpassError(f"Overpass request failed after retries: {last_error}") from last_error
