"""Backing store for catalog locations.

The pipeline only depends on the :class:`LocationStore` protocol. Two
implementations ship here: an in-memory store for tests and embedding, and a
JSON-file store used by the CLI.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import fields, replace
from pathlib import Path
from typing import Any, Mapping, Protocol

from .models import Location

logger = logging.getLogger(__name__)

_LOCATION_FIELDS = frozenset(f.name for f in fields(Location))


class LocationNotFoundError(KeyError):
    """Raised when updating a location id that does not exist."""


class LocationStore(Protocol):
    async def get_by_id(self, location_id: str) -> Location | None: ...

    async def update(self, location_id: str, changes: Mapping[str, Any]) -> None: ...

    async def create(self, record: Location) -> Location: ...

    async def query_by_field(self, field: str, value: Any) -> list[Location]: ...

    async def list_all(self) -> list[Location]: ...


def _apply_changes(location: Location, changes: Mapping[str, Any]) -> Location:
    known = {key: value for key, value in changes.items() if key in _LOCATION_FIELDS and key != "id"}
    unknown = {key: value for key, value in changes.items() if key not in _LOCATION_FIELDS}
    updated = replace(location, **known)
    if unknown:
        updated.extra = {**updated.extra, **unknown}
    return updated


class InMemoryLocationStore:
    """Dictionary-backed store. Records are copied in and out."""

    def __init__(self, locations: list[Location] | None = None) -> None:
        self._locations: dict[str, Location] = {}
        for location in locations or []:
            self._locations[location.id] = replace(location)

    async def get_by_id(self, location_id: str) -> Location | None:
        location = self._locations.get(location_id)
        return replace(location) if location is not None else None

    async def update(self, location_id: str, changes: Mapping[str, Any]) -> None:
        location = self._locations.get(location_id)
        if location is None:
            raise LocationNotFoundError(location_id)
        self._locations[location_id] = _apply_changes(location, changes)

    async def create(self, record: Location) -> Location:
        stored = replace(record, id=record.id or uuid.uuid4().hex)
        self._locations[stored.id] = stored
        return replace(stored)

    async def query_by_field(self, field: str, value: Any) -> list[Location]:
        return [
            replace(location)
            for location in self._locations.values()
            if _field_value(location, field) == value
        ]

    async def list_all(self) -> list[Location]:
        return [replace(location) for location in self._locations.values()]

    async def delete(self, location_id: str) -> None:
        self._locations.pop(location_id, None)


class JsonFileLocationStore(InMemoryLocationStore):
    """Store persisted to a single JSON file, rewritten after every mutation."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = Path(path)
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            return
        with self._path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        records = payload.get("locations", []) if isinstance(payload, dict) else payload
        for raw in records:
            location = Location.from_dict(raw)
            self._locations[location.id] = location
        logger.info("Loaded %d locations from %s", len(self._locations), self._path)

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(
                {"locations": [location.to_dict() for location in self._locations.values()]},
                handle,
                indent=2,
            )
        tmp_path.replace(self._path)

    async def update(self, location_id: str, changes: Mapping[str, Any]) -> None:
        await super().update(location_id, changes)
        self._save()

    async def create(self, record: Location) -> Location:
        stored = await super().create(record)
        self._save()
        return stored

    async def delete(self, location_id: str) -> None:
        await super().delete(location_id)
        self._save()


def _field_value(location: Location, field: str) -> Any:
    if field in _LOCATION_FIELDS:
        return getattr(location, field)
    return location.extra.get(field)
