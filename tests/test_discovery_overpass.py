"""
Tests for the Overpass discovery source.
"""
from urllib.parse import parse_qs

import httpx
import pytest

from venue_pipeline.discovery_overpass import (
    OverpassError,
    OverpassSource,
    build_address,
    build_query,
    normalize_overpass_urls,
    select_website,
)

PRIMARY = "https://overpass.primary/api/interpreter"
MIRROR = "https://overpass.mirror/api/interpreter"

AREA_RESPONSE = {
    "elements": [
        {"type": "relation", "id": 111, "tags": {"name": "Ikeja", "admin_level": "4"}},
        {"type": "relation", "id": 222, "tags": {"name": "Ikeja", "admin_level": "8", "boundary": "administrative"}},
    ]
}

VENUE_RESPONSE = {
    "elements": [
        {
            "type": "node",
            "id": 1,
            "lat": 6.6018,
            "lon": 3.3515,
            "tags": {
                "name": "Amala Spot",
                "amenity": "restaurant",
                "cuisine": "nigerian",
                "addr:housenumber": "12",
                "addr:street": "Allen Avenue",
                "addr:city": "Ikeja",
                "contact:phone": "+234 803 123 4567",
                "website": "amalaspot.ng; https://other.example",
            },
        },
        {
            "type": "way",
            "id": 2,
            "center": {"lat": 6.59, "lon": 3.34},
            "tags": {"name": "Iya Oyo", "amenity": "fast_food"},
        },
        {"type": "node", "id": 3, "lat": 6.5, "lon": 3.3, "tags": {"amenity": "restaurant"}},
        {"type": "way", "id": 4, "tags": {"name": "No Coordinates", "amenity": "cafe"}},
        {"type": "node", "id": 1, "lat": 6.6018, "lon": 3.3515, "tags": {"name": "Amala Spot"}},
    ]
}


def _query(request):
    return parse_qs(request.content.decode())["data"][0]


def _source(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("overpass_urls", [PRIMARY])
    return OverpassSource(client=client, retry_wait=0, **kwargs)


@pytest.mark.asyncio
async def test_discover_resolves_area_and_builds_candidates(cache):
    queries = []

    def handler(request):
        query = _query(request)
        queries.append(query)
        if 'relation["name"=' in query:
            return httpx.Response(200, json=AREA_RESPONSE)
        return httpx.Response(200, json=VENUE_RESPONSE)

    source = _source(handler, cache=cache, amenities=["restaurant", "fast_food"])
    candidates = await source.discover("Ikeja")

    assert "area(3600000222)" in queries[1]
    assert [c.name for c in candidates] == ["Amala Spot", "Iya Oyo"]
    amala = candidates[0]
    assert amala.address == "12 Allen Avenue, Ikeja"
    assert amala.phone == "+234 803 123 4567"
    assert amala.website == "https://amalaspot.ng"
    assert amala.source_url == "https://www.openstreetmap.org/node/1"
    assert amala.fields["cuisine"] == "nigerian"
    assert (candidates[1].coordinates.lat, candidates[1].coordinates.lng) == (6.59, 3.34)
    assert candidates[1].address == "Ikeja"


@pytest.mark.asyncio
async def test_area_resolution_is_cached(cache):
    area_lookups = []

    def handler(request):
        query = _query(request)
        if 'relation["name"=' in query:
            area_lookups.append(query)
            return httpx.Response(200, json=AREA_RESPONSE)
        return httpx.Response(200, json={"elements": []})

    source = _source(handler, cache=cache)
    await source.discover("Ikeja")
    await source.discover("ikeja ")

    assert len(area_lookups) == 1
    assert cache.get("overpass:area:ikeja") == 222


@pytest.mark.asyncio
async def test_unresolvable_area_raises_and_caches_miss(cache):
    def handler(request):
        return httpx.Response(200, json={"elements": []})

    source = _source(handler, cache=cache)
    with pytest.raises(OverpassError, match="Unable to resolve area"):
        await source.discover("Atlantis")

    assert cache.get("overpass:area:atlantis") == 0
    assert await source.resolve_area("Atlantis") is None


@pytest.mark.asyncio
async def test_falls_back_to_next_endpoint():
    hosts = []

    def handler(request):
        hosts.append(request.url.host)
        if request.url.host == "overpass.primary":
            return httpx.Response(504)
        if 'relation["name"=' in _query(request):
            return httpx.Response(200, json=AREA_RESPONSE)
        return httpx.Response(200, json={"elements": []})

    source = _source(handler, overpass_urls=[PRIMARY, MIRROR])
    assert await source.discover("Ikeja") == []
    assert hosts == ["overpass.primary", "overpass.mirror", "overpass.primary", "overpass.mirror"]


@pytest.mark.asyncio
async def test_all_endpoints_failing_raises():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("down", request=request)

    source = _source(handler, overpass_urls=[PRIMARY, MIRROR], attempts=2)
    with pytest.raises(OverpassError):
        await source._post("[out:json];", description="test")

    assert len(calls) == 4


@pytest.mark.asyncio
async def test_empty_area_is_rejected():
    source = _source(lambda request: httpx.Response(200, json={}))

    with pytest.raises(OverpassError):
        await source.discover("  ")


def test_build_query_with_name_pattern():
    query = build_query(42, ["restaurant", "cafe", " "], name_pattern="amala|buka")

    assert "area(3600000042)->.searchArea;" in query
    assert 'node["amenity"~"^(cafe|restaurant)$"]["name"~"amala|buka",i](area.searchArea);' in query


def test_build_query_requires_amenity():
    with pytest.raises(ValueError):
        build_query(42, [])


def test_normalize_overpass_urls_dedupes_in_order():
    assert normalize_overpass_urls(MIRROR, [PRIMARY, MIRROR, " "]) == [PRIMARY, MIRROR]
    assert normalize_overpass_urls() == ["https://overpass-api.de/api/interpreter"]
    assert normalize_overpass_urls(" ", [""], fallback=None) == []
    assert normalize_overpass_urls(f" {PRIMARY} ", None) == [PRIMARY]


def test_select_website_normalizes_scheme():
    assert select_website({"url": "//example.ng"}) == "https://example.ng"
    assert select_website({"website": "  "}) is None


def test_build_address_skips_repeated_parts():
    tags = {"addr:street": "Allen Avenue", "addr:city": "Lagos", "addr:state": "lagos"}

    assert build_address(tags, "Ikeja") == "Allen Avenue, Lagos"
