"""Runtime configuration read from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .cache import CLEANUP_INTERVAL_SECONDS, DEFAULT_TTL_SECONDS
from .dedup import ADDRESS_THRESHOLD, MIN_NAME_LENGTH, NAME_THRESHOLD
from .directory import DEFAULT_PHOTO_URL_TEMPLATE, PLACES_API_BASE
from .discovery_overpass import DEFAULT_AMENITIES, normalize_overpass_urls

DEFAULT_USER_AGENT = "VenuePipeline/0.1 (+https://example.com/contact)"
DEFAULT_DISCOVERY_QUERY = "restaurants"
DEFAULT_STORE_PATH = "data/locations.json"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_str(env: Mapping[str, str], name: str, default: str | None = None) -> str | None:
    value = (env.get(name) or "").strip()
    return value or default


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = (env.get(name) or "").strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


def _env_list(env: Mapping[str, str], name: str) -> list[str]:
    raw = env.get(name) or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


def parse_overpass_urls(env: Mapping[str, str]) -> list[str]:
    return normalize_overpass_urls(
        _env_str(env, "OVERPASS_URL"),
        _env_list(env, "OVERPASS_URLS"),
        fallback=None,
    )


@dataclass(slots=True, frozen=True)
class Settings:
    places_api_key: str | None = None
    places_api_base: str = PLACES_API_BASE
    overpass_urls: tuple[str, ...] = ()
    discovery_amenities: tuple[str, ...] = DEFAULT_AMENITIES
    discovery_name_pattern: str | None = None
    discovery_query: str = DEFAULT_DISCOVERY_QUERY
    discovery_enabled: bool = True
    discovery_keywords: tuple[str, ...] = ()
    discovery_min_confidence: float = 0.6
    store_path: Path | None = None
    cache_default_ttl: float = DEFAULT_TTL_SECONDS
    cache_cleanup_interval: float = CLEANUP_INTERVAL_SECONDS
    enrichment_max_concurrent: int = 3
    enrichment_batch_delay: float = 1.0
    enrichment_retry_delay: float = 5 * 60
    enrichment_max_attempts: int = 3
    enrichment_freshness_days: int = 7
    dedup_name_threshold: float = NAME_THRESHOLD
    dedup_address_threshold: float = ADDRESS_THRESHOLD
    dedup_min_name_length: int = MIN_NAME_LENGTH
    http_connect_timeout: float = 10.0
    http_read_timeout: float = 20.0
    user_agent: str = DEFAULT_USER_AGENT
    photo_url_template: str = DEFAULT_PHOTO_URL_TEMPLATE
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        store = _env_str(env, "LOCATION_STORE")
        amenities = _env_list(env, "DISCOVERY_AMENITIES")
        return cls(
            places_api_key=_env_str(env, "GOOGLE_PLACES_API_KEY"),
            places_api_base=_env_str(env, "PLACES_API_BASE", PLACES_API_BASE),
            overpass_urls=tuple(parse_overpass_urls(env)),
            discovery_amenities=tuple(amenities) if amenities else DEFAULT_AMENITIES,
            discovery_name_pattern=_env_str(env, "DISCOVERY_NAME_PATTERN"),
            discovery_query=_env_str(env, "DISCOVERY_QUERY", DEFAULT_DISCOVERY_QUERY),
            discovery_enabled=_env_bool(env, "FEATURE_DISCOVERY_ENABLED", True),
            discovery_keywords=tuple(_env_list(env, "DISCOVERY_KEYWORDS")),
            discovery_min_confidence=_env_float(env, "DISCOVERY_MIN_CONFIDENCE", 0.6),
            store_path=Path(store) if store else None,
            cache_default_ttl=max(1.0, _env_float(env, "CACHE_DEFAULT_TTL", DEFAULT_TTL_SECONDS)),
            cache_cleanup_interval=max(
                1.0, _env_float(env, "CACHE_CLEANUP_INTERVAL", CLEANUP_INTERVAL_SECONDS)
            ),
            enrichment_max_concurrent=max(1, _env_int(env, "ENRICHMENT_MAX_CONCURRENT", 3)),
            enrichment_batch_delay=max(0.0, _env_float(env, "ENRICHMENT_BATCH_DELAY", 1.0)),
            enrichment_retry_delay=max(0.0, _env_float(env, "ENRICHMENT_RETRY_DELAY", 5 * 60)),
            enrichment_max_attempts=max(1, _env_int(env, "ENRICHMENT_MAX_ATTEMPTS", 3)),
            enrichment_freshness_days=max(0, _env_int(env, "ENRICHMENT_FRESHNESS_DAYS", 7)),
            dedup_name_threshold=_env_float(env, "DEDUP_NAME_THRESHOLD", NAME_THRESHOLD),
            dedup_address_threshold=_env_float(env, "DEDUP_ADDRESS_THRESHOLD", ADDRESS_THRESHOLD),
            dedup_min_name_length=max(0, _env_int(env, "DEDUP_MIN_NAME_LENGTH", MIN_NAME_LENGTH)),
            http_connect_timeout=_env_float(env, "HTTP_CONNECT_TIMEOUT", 10.0),
            http_read_timeout=_env_float(env, "HTTP_READ_TIMEOUT", 20.0),
            user_agent=_env_str(env, "USER_AGENT", DEFAULT_USER_AGENT),
            photo_url_template=_env_str(env, "PHOTO_URL_TEMPLATE", DEFAULT_PHOTO_URL_TEMPLATE),
            log_level=_env_str(env, "LOG_LEVEL", "INFO"),
        )
