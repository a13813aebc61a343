"""Turn discovery candidates into stored, de-duplicated catalog entries."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Protocol

from .clock import Clock, SystemClock
from .dedup import DEFAULT_THRESHOLDS, SimilarityThresholds, is_duplicate
from .directory import DISCOVERY_SOURCE
from .enrichment import EnrichmentQueue
from .models import (
    STATUS_APPROVED,
    STATUS_PENDING,
    CandidateRecord,
    DiscoverySummary,
    Location,
    Priority,
    SaveError,
)
from .store import LocationStore

logger = logging.getLogger(__name__)


class DiscoverySource(Protocol):
    name: str

    async def discover(self, area: str) -> list[CandidateRecord]: ...


@dataclass(slots=True, frozen=True)
class CandidateRules:
    """Sanity checks a candidate must pass before it is stored.

    Each failed check lowers the confidence; a high rating or a trusted
    source raises it. ``keywords`` is empty by default, which disables the
    relevance check.
    """

    min_name_length: int = 3
    min_confidence: float = 0.6
    keywords: tuple[str, ...] = ()
    trusted_sources: tuple[str, ...] = (DISCOVERY_SOURCE,)


DEFAULT_RULES = CandidateRules()


@dataclass(slots=True)
class CandidateValidation:
    is_valid: bool
    confidence: float
    issues: list[str] = field(default_factory=list)


def validate_candidate(candidate: CandidateRecord, rules: CandidateRules = DEFAULT_RULES) -> CandidateValidation:
    issues: list[str] = []
    confidence = 1.0

    name = (candidate.name or "").strip()
    if len(name) < rules.min_name_length:
        issues.append("Invalid or missing name")
        confidence -= 0.4
    if not (candidate.address or "").strip():
        issues.append("Missing address")
        confidence -= 0.3
    if rules.keywords:
        text = f"{name} {candidate.fields.get('description') or ''}".lower()
        if not any(keyword.lower() in text for keyword in rules.keywords):
            issues.append("No relevant keyword in name or description")
            confidence -= 0.3

    rating = candidate.fields.get("rating")
    if isinstance(rating, (int, float)) and rating > 4.0:
        confidence += 0.1
    if candidate.source in rules.trusted_sources:
        confidence += 0.1

    # Rounded to keep float drift out of the threshold comparison
    confidence = round(max(0.0, min(1.0, confidence)), 4)
    return CandidateValidation(
        is_valid=confidence > rules.min_confidence and len(issues) < 3,
        confidence=confidence,
        issues=issues,
    )


def candidate_to_location(candidate: CandidateRecord, *, clock: Clock) -> Location:
    """Build the catalog record for an accepted candidate.

    Discovered venues always enter the catalog as ``pending`` so they go
    through moderation, whatever status the source reported.
    """

    extra = {key: value for key, value in candidate.fields.items() if value is not None}
    return Location(
        id="",
        name=candidate.name.strip(),
        address=candidate.address.strip(),
        coordinates=candidate.coordinates,
        status=STATUS_PENDING,
        discovery_source=candidate.source,
        source_url=candidate.source_url,
        phone=candidate.phone,
        website=candidate.website,
        rating=extra.pop("rating", None),
        review_count=extra.pop("review_count", None),
        submitted_at=clock.now(),
        extra=extra,
    )


class DiscoveryOrchestrator:
    def __init__(
        self,
        store: LocationStore,
        queue: EnrichmentQueue | None = None,
        *,
        clock: Clock | None = None,
        thresholds: SimilarityThresholds = DEFAULT_THRESHOLDS,
        rules: CandidateRules = DEFAULT_RULES,
    ) -> None:
        self._store = store
        self._queue = queue
        self._clock = clock or SystemClock()
        self._thresholds = thresholds
        self._rules = rules

    async def ingest(
        self,
        candidates: Iterable[CandidateRecord],
        *,
        enqueue: bool = True,
    ) -> DiscoverySummary:
        """Store every valid candidate that is not a duplicate of the catalog.

        The catalog snapshot is loaded once and grows with each saved record,
        so two near-identical candidates in one batch produce one location.
        """

        candidates = list(candidates)
        summary = DiscoverySummary(total_discovered=len(candidates))
        snapshot: list[Location] = await self._store.list_all()

        for candidate in candidates:
            validation = validate_candidate(candidate, self._rules)
            if not validation.is_valid:
                logger.info(
                    "Rejecting candidate %r (confidence %.2f): %s",
                    candidate.name,
                    validation.confidence,
                    ", ".join(validation.issues),
                )
                summary.rejected_names.append(candidate.name)
                continue

            if is_duplicate(candidate, snapshot, thresholds=self._thresholds):
                logger.debug("Skipping duplicate candidate %s", candidate.name)
                summary.duplicate_names.append(candidate.name)
                continue

            try:
                saved = await self._store.create(candidate_to_location(candidate, clock=self._clock))
            except Exception as exc:
                logger.warning("Failed to save %s: %s", candidate.name, exc)
                summary.save_errors.append(SaveError(location_name=candidate.name, error=str(exc)))
                continue

            snapshot.append(saved)
            summary.saved.append(saved)

            if enqueue and self._queue is not None:
                priority = Priority.HIGH if saved.status == STATUS_APPROVED else Priority.MEDIUM
                self._queue.enqueue(saved.id, saved.address, priority)
                summary.queued_for_enrichment += 1

        logger.info(
            "Discovery ingest: %d discovered, %d saved, %d rejected, %d duplicates, %d errors",
            summary.total_discovered,
            len(summary.saved),
            len(summary.rejected_names),
            len(summary.duplicate_names),
            len(summary.save_errors),
        )
        return summary
