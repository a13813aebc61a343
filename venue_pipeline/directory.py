"""Client for the third-party place directory (Google Places API v1).

Every call returns a :class:`~venue_pipeline.models.LookupResult` instead of
raising, so the enrichment queue can decide on retries from the outcome tag:

- empty result / unknown id -> ``NO_MATCH``
- timeouts, connection failures, HTTP 408/429/5xx, unparsable bodies -> ``TRANSIENT_ERROR``
- any other 4xx, missing API key -> ``PERMANENT_ERROR``
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Mapping, Protocol

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from .cache import CacheKeys, TTLCache
from .models import CandidateRecord, Coordinates, Location, LookupResult, LookupStatus

logger = logging.getLogger(__name__)

PLACES_API_BASE = "https://places.googleapis.com/v1"
DETAILS_FIELD_MASK = (
    "id,displayName,formattedAddress,location,photos,rating,userRatingCount,"
    "priceLevel,websiteUri,nationalPhoneNumber,regularOpeningHours,types"
)
SEARCH_FIELD_MASK = ",".join(
    f"places.{name}"
    for name in (
        "id",
        "displayName",
        "formattedAddress",
        "location",
        "rating",
        "userRatingCount",
        "websiteUri",
        "nationalPhoneNumber",
        "types",
    )
)
DEFAULT_PHOTO_URL_TEMPLATE = "/api/proxy/google-photo?photoreference={name}&maxwidth=400"
ENRICHMENT_SOURCE = "background-job"
DISCOVERY_SOURCE = "google-places-api"

IDENTIFIER_TTL_SECONDS = 24 * 60 * 60
DETAILS_TTL_SECONDS = 60 * 60

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

WEEKDAYS = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")


class DirectoryError(RuntimeError):
    """Raised when a directory text search used for discovery fails."""


class DirectoryClient(Protocol):
    async def resolve_identifier(self, text: str) -> LookupResult[str]: ...

    async def fetch_details(self, identifier: str) -> LookupResult[dict[str, Any]]: ...


class PlacesDirectoryClient:
    """Async Places API client with bounded concurrency and a read-through cache."""

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = PLACES_API_BASE,
        cache: TTLCache | None = None,
        user_agent: str = "venue-pipeline/0.1",
        concurrency: int = 3,
        max_attempts: int = 2,
        retry_wait: float = 0.5,
        connect_timeout: float = 10.0,
        read_timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        self._api_key = (api_key or "").strip()
        self._base_url = base_url.rstrip("/")
        self._cache = cache
        self._max_attempts = max(1, max_attempts)
        self._retry_wait = retry_wait
        self._semaphore = asyncio.Semaphore(concurrency)

        timeout = httpx.Timeout(
            connect=connect_timeout,
            read=read_timeout,
            write=read_timeout,
            pool=connect_timeout,
        )
        self._client = httpx.AsyncClient(
            headers={"User-Agent": user_agent, "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def __aenter__(self) -> "PlacesDirectoryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def resolve_identifier(self, text: str) -> LookupResult[str]:
        """Resolve free text (usually an address) to a directory place id."""

        query = " ".join((text or "").split())
        if not query:
            return LookupResult.no_match("empty query")
        if not self.configured:
            return LookupResult.permanent("directory API key not configured")

        cache_key = CacheKeys.directory_identifier(query)
        if self._cache is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.debug("Cache HIT for place id: %s", query)
                return LookupResult.hit(cached)

        outcome = await self._call(
            "POST",
            "/places:searchText",
            field_mask="places.id",
            json={"textQuery": query, "maxResultCount": 1},
        )
        if not outcome.found:
            return outcome

        places = (outcome.value or {}).get("places") or []
        place_id = places[0].get("id") if places else None
        if not place_id:
            return LookupResult.no_match(f"no place found for {query!r}")

        if self._cache is not None:
            self._cache.set(cache_key, place_id, IDENTIFIER_TTL_SECONDS)
        return LookupResult.hit(place_id)

    async def fetch_details(self, identifier: str) -> LookupResult[dict[str, Any]]:
        if not identifier:
            return LookupResult.no_match("empty identifier")
        if not self.configured:
            return LookupResult.permanent("directory API key not configured")

        cache_key = CacheKeys.directory_details(identifier)
        if self._cache is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.debug("Cache HIT for place details: %s", identifier)
                return LookupResult.hit(cached)

        outcome = await self._call(
            "GET",
            f"/places/{identifier}",
            field_mask=DETAILS_FIELD_MASK,
            not_found_is_miss=True,
        )
        if not outcome.found:
            return outcome
        details = outcome.value or {}
        if not details.get("id"):
            return LookupResult.no_match(f"no details for {identifier}")

        if self._cache is not None:
            self._cache.set(cache_key, details, DETAILS_TTL_SECONDS)
        return LookupResult.hit(details)

    async def search_text(self, query: str, *, max_results: int = 20) -> list[CandidateRecord]:
        """Run a text search and convert each place into a discovery candidate."""

        if not self.configured:
            raise DirectoryError("directory API key not configured")

        outcome = await self._call(
            "POST",
            "/places:searchText",
            field_mask=SEARCH_FIELD_MASK,
            json={"textQuery": query, "maxResultCount": max(1, min(max_results, 20))},
        )
        if not outcome.found:
            if outcome.status is not LookupStatus.NO_MATCH:
                raise DirectoryError(f"Directory search failed for {query!r}: {outcome.message}")
            return []
        places = (outcome.value or {}).get("places") or []
        candidates = [candidate for candidate in map(place_to_candidate, places) if candidate is not None]
        logger.info("Directory search %r returned %d candidates", query, len(candidates))
        return candidates

    async def _call(
        self,
        method: str,
        path: str,
        *,
        field_mask: str,
        not_found_is_miss: bool = False,
        **kwargs: Any,
    ) -> LookupResult[dict[str, Any]]:
        headers = {"X-Goog-Api-Key": self._api_key, "X-Goog-FieldMask": field_mask}
        url = f"{self._base_url}{path}"
        try:
            async with self._semaphore:
                response = await self._request_with_retries(method, url, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            logger.debug("Directory request to %s failed: %s", url, exc)
            return LookupResult.transient(f"{type(exc).__name__}: {exc}")

        status = response.status_code
        if status == 404 and not_found_is_miss:
            return LookupResult.no_match(f"{path} not found")
        if status in RETRYABLE_STATUS_CODES:
            return LookupResult.transient(f"HTTP {status} from directory")
        if status >= 400:
            if status == 403:
                logger.warning(
                    "Directory returned 403; check the API key, billing and API enablement"
                )
            return LookupResult.permanent(f"HTTP {status} from directory")

        try:
            payload = response.json()
        except ValueError as exc:
            return LookupResult.transient(f"Invalid JSON from directory: {exc}")
        if not isinstance(payload, dict):
            return LookupResult.transient("Unexpected directory payload")
        return LookupResult.hit(payload)

    async def _request_with_retries(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Retry transport-level failures; HTTP error statuses are returned as-is."""

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential_jitter(initial=self._retry_wait, max=4.0, jitter=self._retry_wait),
            reraise=True,
        ):
            with attempt:
                return await self._client.request(method, url, **kwargs)
        raise AssertionError("unreachable")  # pragma: no cover


class DirectorySearchSource:
    """Discovery source that runs ``"<query> in <area>"`` against the directory."""

    name = DISCOVERY_SOURCE

    def __init__(self, client: PlacesDirectoryClient, *, query: str = "restaurants", max_results: int = 20) -> None:
        self._client = client
        self._query = query
        self._max_results = max_results

    async def discover(self, area: str) -> list[CandidateRecord]:
        text = f"{self._query} in {area}".strip() if area else self._query
        return await self._client.search_text(text, max_results=self._max_results)


def place_to_candidate(place: Mapping[str, Any]) -> CandidateRecord | None:
    name = ((place.get("displayName") or {}).get("text") or "").strip()
    if not name:
        return None
    location = place.get("location") or {}
    coordinates = None
    if "latitude" in location and "longitude" in location:
        coordinates = Coordinates(lat=float(location["latitude"]), lng=float(location["longitude"]))
    return CandidateRecord(
        name=name,
        address=(place.get("formattedAddress") or "").strip(),
        source=DISCOVERY_SOURCE,
        coordinates=coordinates,
        phone=place.get("nationalPhoneNumber"),
        website=place.get("websiteUri"),
        fields={
            "place_id": place.get("id"),
            "types": list(place.get("types") or []),
            "rating": place.get("rating"),
            "review_count": place.get("userRatingCount"),
        },
    )


def parse_opening_hours(opening_hours: Mapping[str, Any] | None) -> dict[str, dict[str, Any]]:
    """Convert ``regularOpeningHours.periods`` into ``{weekday: {open, close}}``."""

    hours: dict[str, dict[str, Any]] = {}
    if not opening_hours:
        return hours
    for period in opening_hours.get("periods") or []:
        opening = period.get("open") or {}
        day = opening.get("day")
        if not isinstance(day, int) or not 0 <= day < len(WEEKDAYS):
            continue
        closing = period.get("close")
        hours[WEEKDAYS[day]] = {
            "open": _format_time(opening),
            "close": _format_time(closing) if closing else "23:59",
        }
    return hours


def _format_time(point: Mapping[str, Any]) -> str:
    return f"{int(point.get('hour', 0)):02d}:{int(point.get('minute', 0)):02d}"


def build_enrichment_fields(
    details: Mapping[str, Any],
    location: Location,
    *,
    enriched_at: datetime,
    photo_url_template: str = DEFAULT_PHOTO_URL_TEMPLATE,
) -> dict[str, Any]:
    """Merge directory details over a stored location, keeping existing values as fallbacks."""

    photos = details.get("photos") or []
    images = [
        photo_url_template.format(name=photo["name"])
        for photo in photos
        if isinstance(photo, Mapping) and photo.get("name")
    ]
    hours = parse_opening_hours(details.get("regularOpeningHours"))
    return {
        "rating": details.get("rating") or location.rating,
        "review_count": details.get("userRatingCount") or location.review_count,
        "phone": details.get("nationalPhoneNumber") or location.phone,
        "website": details.get("websiteUri") or location.website,
        "price_level": details.get("priceLevel") or location.price_level,
        "images": images or list(location.images),
        "hours": hours or dict(location.hours),
        "last_enriched": enriched_at,
        "enrichment_source": ENRICHMENT_SOURCE,
    }
