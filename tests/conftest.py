"""
Shared pytest fixtures for the venue pipeline test suite.
"""
from datetime import datetime, timezone

import pytest

from venue_pipeline.cache import TTLCache
from venue_pipeline.enrichment import EnrichmentQueue, QueueSettings
from venue_pipeline.models import Coordinates, Location, LookupResult
from venue_pipeline.store import InMemoryLocationStore

START = datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = START):
        self._now = start.timestamp()

    def time(self) -> float:
        return self._now

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._now, timezone.utc)

    def advance(self, seconds: float) -> None:
        self._now += seconds


class FakeDirectory:
    """Directory double returning canned results keyed by address / place id."""

    def __init__(self):
        self.identifiers: dict = {}
        self.details: dict = {}
        self.calls: list[tuple[str, str]] = []

    def add_place(self, address: str, place_id: str, **details):
        self.identifiers[address] = LookupResult.hit(place_id)
        self.details[place_id] = LookupResult.hit({"id": place_id, **details})

    async def resolve_identifier(self, text):
        self.calls.append(("resolve", text))
        result = self.identifiers.get(text, LookupResult.no_match())
        if isinstance(result, Exception):
            raise result
        return result

    async def fetch_details(self, identifier):
        self.calls.append(("details", identifier))
        result = self.details.get(identifier, LookupResult.no_match())
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TTLCache(clock=clock)


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def locations():
    return [
        Location(
            id="loc-1",
            name="Amala Spot",
            address="12 Allen Avenue, Ikeja, Lagos",
            coordinates=Coordinates(lat=6.6018, lng=3.3515),
            status="approved",
            phone="0803 123 4567",
        ),
        Location(
            id="loc-2",
            name="Iya Basira Buka",
            address="4 Bode Thomas Street, Surulere, Lagos",
            status="pending",
        ),
    ]


@pytest.fixture
def store(locations):
    return InMemoryLocationStore(locations)


@pytest.fixture
def queue_settings():
    return QueueSettings(batch_delay=0)


@pytest.fixture
def queue(store, directory, clock, queue_settings):
    return EnrichmentQueue(store, directory, clock=clock, settings=queue_settings)
