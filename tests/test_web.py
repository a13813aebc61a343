"""
Tests for the FastAPI endpoints.
"""
import pytest
from fastapi.testclient import TestClient

from venue_pipeline.enrichment import QueueSettings
from venue_pipeline.models import CandidateRecord
from venue_pipeline.service import PipelineService
from web.app import ENRICHMENT_ACTIONS, create_app


class StaticSource:
    name = "openstreetmap-overpass"

    async def discover(self, area):
        return [
            CandidateRecord(name="Amala Spot", address="", source=self.name),
            CandidateRecord(name="Ewa Agoyin Corner", address="5 Ojuelegba Road", source=self.name),
        ]


def _service(store, directory, clock, cache, **kwargs):
    return PipelineService(
        store=store,
        directory=directory,
        clock=clock,
        cache=cache,
        sources=[StaticSource()],
        queue_settings=QueueSettings(batch_delay=0),
        **kwargs,
    )


@pytest.fixture
def service(store, directory, clock, cache):
    return _service(store, directory, clock, cache)


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as client:
        # Keep queued jobs in place so responses are deterministic
        service.queue._stopped = True
        yield client


def test_discovery_status(client):
    response = client.get("/discovery")

    assert response.status_code == 200
    assert response.json()["data"] == {"enabled": True, "sources": ["openstreetmap-overpass"]}


def test_run_discovery_returns_summary(client, service):
    response = client.post("/discovery", json={"area": "Surulere"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["totalDiscovered"] == 2
    assert data["savedToDatabase"] == 1
    assert data["duplicateNames"] == ["Amala Spot"]
    assert data["queuedForEnrichment"] == 1
    assert service.get_queue_stats().queue_length == 1


def test_run_discovery_requires_area(client):
    response = client.post("/discovery", json={"area": "  "})

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_discovery_disabled_returns_503(store, directory, clock, cache):
    service = _service(store, directory, clock, cache, discovery_enabled=False)
    with TestClient(create_app(service)) as client:
        response = client.post("/discovery", json={"area": "Lagos"})

    assert response.status_code == 503


def test_discovery_stats_endpoint(client):
    client.post("/discovery", json={"area": "Surulere"})

    response = client.get("/discovery/stats", params={"days": 7})

    assert response.status_code == 200
    assert response.json()["data"]["bySource"] == {"openstreetmap-overpass": 1}


def test_enrichment_stats_lists_actions(client):
    response = client.get("/jobs/enrichment")

    data = response.json()["data"]
    assert data["queueLength"] == 0
    assert data["availableActions"] == list(ENRICHMENT_ACTIONS)


def test_queue_specific_locations(client):
    response = client.post(
        "/jobs/enrichment",
        json={"action": "queue-specific", "locationIds": ["loc-1", "unknown"], "priority": "high"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Queued 1 of 2 specific locations for enrichment"
    assert body["data"]["priorityBreakdown"] == {"high": 1, "medium": 0, "low": 0}


def test_queue_specific_requires_ids(client):
    response = client.post("/jobs/enrichment", json={"action": "queue-specific"})

    assert response.status_code == 400
    assert response.json()["error"] == "locationIds array is required"


def test_queue_all_then_clear(client):
    queued = client.post("/jobs/enrichment", json={"action": "queue-all-unenriched"})
    assert queued.json()["data"]["queueLength"] == 2

    cleared = client.post("/jobs/enrichment", json={"action": "clear-queue"})
    assert cleared.json()["data"]["queueLength"] == 0


def test_queue_approved(client):
    response = client.post("/jobs/enrichment", json={"action": "queue-approved"})

    assert response.json()["data"]["priorityBreakdown"]["high"] == 1


@pytest.mark.parametrize(
    "payload",
    [{"action": "explode"}, {"action": "queue-specific", "locationIds": [], "priority": "urgent"}],
)
def test_invalid_enrichment_requests(client, payload):
    response = client.post("/jobs/enrichment", json=payload)

    assert response.status_code == 400


def test_cache_endpoints(client, service):
    service.cache.set("directory:id:somewhere", "ChIJ1")
    service.cache.get("directory:id:somewhere")

    stats = client.get("/cache/stats").json()["data"]
    assert stats["keys"] == ["directory:id:somewhere"]
    assert stats["hits"] == 1

    assert client.delete("/cache").status_code == 200
    assert client.get("/cache/stats").json()["data"]["size"] == 0


def test_duplicate_check(client):
    response = client.post(
        "/duplicates/check",
        json={"name": "amala spot", "address": "", "coordinates": {"lat": 6.6018, "lng": 3.3515}},
    )

    data = response.json()["data"]
    assert data["isDuplicate"] is True
    assert data["matches"][0]["id"] == "loc-1"
    assert "1 location(s) within 50m radius" in data["reasons"]


def test_duplicate_check_requires_name(client):
    response = client.post("/duplicates/check", json={"address": "somewhere"})

    assert response.status_code == 400
