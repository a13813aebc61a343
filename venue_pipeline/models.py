"""Data models used across the venue ingestion pipeline."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Generic, Mapping, Optional, TypeVar

T = TypeVar("T")

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"


class Priority(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def coerce(cls, value: "Priority | str") -> "Priority":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown priority {value!r}; expected high, medium or low") from None


@dataclass(slots=True)
class Coordinates:
    lat: float
    lng: float


@dataclass(slots=True)
class CandidateRecord:
    """A venue proposed by a discovery source that has not been stored yet."""

    name: str
    address: str
    source: str
    coordinates: Optional[Coordinates] = None
    source_url: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    status: str = STATUS_PENDING
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Location:
    """A venue stored in the catalog."""

    id: str
    name: str
    address: str
    coordinates: Optional[Coordinates] = None
    status: str = STATUS_PENDING
    discovery_source: Optional[str] = None
    source_url: Optional[str] = None
    description: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    price_level: Optional[str] = None
    images: list[str] = field(default_factory=list)
    hours: dict[str, dict[str, Any]] = field(default_factory=dict)
    submitted_at: Optional[datetime] = None
    last_enriched: Optional[datetime] = None
    enrichment_source: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("submitted_at", "last_enriched"):
            value = getattr(self, key)
            data[key] = value.isoformat() if value is not None else None
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Location":
        known = {f.name for f in fields(cls)}
        kwargs = {key: value for key, value in data.items() if key in known}
        coords = kwargs.get("coordinates")
        if isinstance(coords, Mapping):
            kwargs["coordinates"] = Coordinates(lat=float(coords["lat"]), lng=float(coords["lng"]))
        for key in ("submitted_at", "last_enriched"):
            value = kwargs.get(key)
            if isinstance(value, str) and value:
                kwargs[key] = datetime.fromisoformat(value)
        extra = dict(kwargs.get("extra") or {})
        extra.update({key: value for key, value in data.items() if key not in known})
        kwargs["extra"] = extra
        return cls(**kwargs)


@dataclass(slots=True)
class EnrichmentJob:
    """A pending directory lookup for one stored location.

    ``created_at`` and ``scheduled_for`` are epoch seconds from the queue's clock.
    """

    location_id: str
    address: str
    priority: Priority
    created_at: float
    scheduled_for: float
    attempts: int = 0
    max_attempts: int = 3


class LookupStatus(str, enum.Enum):
    FOUND = "found"
    NO_MATCH = "no_match"
    TRANSIENT_ERROR = "transient_error"
    PERMANENT_ERROR = "permanent_error"


@dataclass(slots=True, frozen=True)
class LookupResult(Generic[T]):
    """Outcome of one directory call; retry policy keys off ``status``."""

    status: LookupStatus
    value: Optional[T] = None
    message: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status is LookupStatus.FOUND

    @classmethod
    def hit(cls, value: T) -> "LookupResult[T]":
        return cls(LookupStatus.FOUND, value=value)

    @classmethod
    def no_match(cls, message: str | None = None) -> "LookupResult[T]":
        return cls(LookupStatus.NO_MATCH, message=message)

    @classmethod
    def transient(cls, message: str) -> "LookupResult[T]":
        return cls(LookupStatus.TRANSIENT_ERROR, message=message)

    @classmethod
    def permanent(cls, message: str) -> "LookupResult[T]":
        return cls(LookupStatus.PERMANENT_ERROR, message=message)


@dataclass(slots=True)
class SaveError:
    location_name: str
    error: str


@dataclass(slots=True)
class DiscoverySummary:
    """Aggregate outcome of ingesting one batch of candidates."""

    total_discovered: int = 0
    saved: list[Location] = field(default_factory=list)
    duplicate_names: list[str] = field(default_factory=list)
    rejected_names: list[str] = field(default_factory=list)
    save_errors: list[SaveError] = field(default_factory=list)
    queued_for_enrichment: int = 0
    source_errors: dict[str, str] = field(default_factory=dict)

    @property
    def has_errors(self) -> bool:
        return bool(self.save_errors or self.source_errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalDiscovered": self.total_discovered,
            "savedToDatabase": len(self.saved),
            "skippedDuplicates": len(self.duplicate_names),
            "duplicateNames": list(self.duplicate_names),
            "rejectedNames": list(self.rejected_names),
            "saveErrors": [
                {"locationName": err.location_name, "error": err.error}
                for err in self.save_errors
            ],
            "queuedForEnrichment": self.queued_for_enrichment,
            "sourceErrors": dict(self.source_errors),
        }
