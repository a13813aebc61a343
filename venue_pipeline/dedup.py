"""Similarity-based duplicate detection for candidate venues.

A candidate is the same real-world place as a catalog entry when its
normalized name is more than 70% similar, or its normalized address more than
85% similar. Similarity is normalized Levenshtein: ``(max_len - distance) /
max_len``. The heuristic is best-effort; the thresholds are uncalibrated
constants and are kept as-is.

Very short names (e.g. a single character) score high against unrelated short
names. Names shorter than ``min_name_length`` after normalization therefore
only match on exact equality.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from rapidfuzz.distance import Levenshtein

NAME_THRESHOLD = 0.70
ADDRESS_THRESHOLD = 0.85
MIN_NAME_LENGTH = 3
PROXIMITY_METERS = 50.0

_WHITESPACE_RE = re.compile(r"\s+")
_NON_DIGIT_RE = re.compile(r"\D")


@dataclass(slots=True, frozen=True)
class SimilarityThresholds:
    name: float = NAME_THRESHOLD
    address: float = ADDRESS_THRESHOLD
    min_name_length: int = MIN_NAME_LENGTH


DEFAULT_THRESHOLDS = SimilarityThresholds()


@dataclass(slots=True)
class DuplicateCheck:
    """Detailed result of comparing one candidate to a catalog snapshot."""

    is_duplicate: bool
    matches: list[Any] = field(default_factory=list)
    confidence: float = 0.0
    reasons: list[str] = field(default_factory=list)


def normalize(value: Any) -> str:
    """Lowercase, trim and collapse internal whitespace."""

    if value is None:
        return ""
    return _WHITESPACE_RE.sub(" ", str(value)).strip().lower()


def similarity(a: str, b: str) -> float:
    """Normalized Levenshtein similarity in [0, 1] of two already-normalized strings."""

    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return float(Levenshtein.normalized_similarity(a, b))


def name_similarity(
    a: Any,
    b: Any,
    *,
    min_length: int = MIN_NAME_LENGTH,
) -> float:
    left, right = normalize(a), normalize(b)
    if left == right:
        return 1.0
    if len(left) < min_length or len(right) < min_length:
        return 0.0
    return similarity(left, right)


def address_similarity(a: Any, b: Any) -> float:
    left, right = normalize(a), normalize(b)
    if not left or not right:
        return 0.0
    return similarity(left, right)


def _field(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def _matches(
    candidate: Any,
    existing: Any,
    thresholds: SimilarityThresholds,
) -> tuple[bool, float, float]:
    name_sim = name_similarity(
        _field(candidate, "name"),
        _field(existing, "name"),
        min_length=thresholds.min_name_length,
    )
    addr_sim = address_similarity(_field(candidate, "address"), _field(existing, "address"))
    return (name_sim > thresholds.name or addr_sim > thresholds.address), name_sim, addr_sim


def is_duplicate(
    candidate: Any,
    catalog: Iterable[Any],
    *,
    thresholds: SimilarityThresholds = DEFAULT_THRESHOLDS,
) -> bool:
    """Return True if *candidate* matches any entry of *catalog*.

    Records may be mappings or objects exposing ``name`` and ``address``.
    """

    try:
        return any(_matches(candidate, existing, thresholds)[0] for existing in catalog)
    except Exception:  # pragma: no cover - malformed input never blocks discovery
        return False


def check_duplicate(
    candidate: Any,
    catalog: Iterable[Any],
    *,
    thresholds: SimilarityThresholds = DEFAULT_THRESHOLDS,
) -> DuplicateCheck:
    """Like :func:`is_duplicate` but returns the matches and why they matched."""

    matches: list[Any] = []
    confidence = 0.0
    reasons: list[str] = []
    exact_name = False
    similar_name = False
    similar_address = False

    candidate_name = normalize(_field(candidate, "name"))
    for existing in catalog:
        try:
            matched, name_sim, addr_sim = _matches(candidate, existing, thresholds)
        except Exception:  # pragma: no cover
            continue
        if not matched:
            continue
        matches.append(existing)
        confidence = max(confidence, name_sim, addr_sim)
        if candidate_name and candidate_name == normalize(_field(existing, "name")):
            exact_name = True
        elif name_sim > thresholds.name:
            similar_name = True
        if addr_sim > thresholds.address:
            similar_address = True

    if not matches:
        return DuplicateCheck(is_duplicate=False)

    if exact_name:
        reasons.append("Exact name match found")
    if similar_name:
        reasons.append("Similar name found")
    if similar_address:
        reasons.append("Similar address found")
    if len(matches) > 1:
        reasons.append(f"Multiple similar locations found ({len(matches)})")

    phone = _normalize_phone(_field(candidate, "phone"))
    if phone and any(_normalize_phone(_field(m, "phone")) == phone for m in matches):
        reasons.append("Phone number already exists in catalog")

    origin = _coords(_field(candidate, "coordinates"))
    if origin is not None:
        nearby = [
            m for m in matches
            if (point := _coords(_field(m, "coordinates"))) is not None
            and distance_meters(origin, point) < PROXIMITY_METERS
        ]
        if nearby:
            reasons.append(f"{len(nearby)} location(s) within {PROXIMITY_METERS:.0f}m radius")

    return DuplicateCheck(
        is_duplicate=True,
        matches=matches,
        confidence=round(confidence, 3),
        reasons=reasons,
    )


def _normalize_phone(value: Any) -> str:
    if not value:
        return ""
    return _NON_DIGIT_RE.sub("", str(value))


def _coords(value: Any) -> tuple[float, float] | None:
    if value is None:
        return None
    lat = _field(value, "lat")
    lng = _field(value, "lng")
    if lat is None or lng is None:
        return None
    try:
        return float(lat), float(lng)
    except (TypeError, ValueError):
        return None


def distance_meters(a: tuple[float, float], b: tuple[float, float]) -> float:
    """Great-circle distance between two ``(lat, lng)`` points."""

    lat1, lng1 = map(math.radians, a)
    lat2, lng2 = map(math.radians, b)
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * 6_371_000.0 * math.asin(math.sqrt(h))
