"""Process-local read-through cache with per-entry TTL and daily hit/miss counters."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from .clock import Clock, DailyCounters, SystemClock

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60
CLEANUP_INTERVAL_SECONDS = 10 * 60

T = TypeVar("T")


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    data: T
    timestamp: float
    ttl: float

    def is_valid(self, now: float) -> bool:
        return now - self.timestamp <= self.ttl


@dataclass(slots=True)
class CacheStats:
    size: int
    keys: list[str]
    hits: int
    misses: int

    def to_dict(self) -> dict[str, object]:
        return {
            "size": self.size,
            "keys": list(self.keys),
            "hits": self.hits,
            "misses": self.misses,
        }


class TTLCache:
    """Key/value store where every entry expires ``ttl`` seconds after it was set.

    Expired entries are treated as absent. They are dropped lazily on read and
    eagerly by :meth:`cleanup`, which the service runs on a fixed interval so
    keys that are never read again do not accumulate.
    """

    def __init__(
        self,
        *,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Clock | None = None,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError("default_ttl must be > 0")
        self._default_ttl = float(default_ttl)
        self._clock = clock or SystemClock()
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._counters = DailyCounters(self._clock, ("hits", "misses"))

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    def get(self, key: str) -> Any | None:
        try:
            entry = self._entries.get(key)
            if entry is None:
                self._counters.increment("misses")
                return None
            if not entry.is_valid(self._clock.time()):
                self._entries.pop(key, None)
                self._counters.increment("misses")
                return None
            self._counters.increment("hits")
            return entry.data
        except Exception as exc:  # pragma: no cover - clock failure
            logger.warning("Cache GET failed for %s: %s", key, exc)
            return None

    def set(self, key: str, data: Any, ttl: float | None = None) -> None:
        try:
            effective_ttl = float(ttl) if ttl else self._default_ttl
            self._entries[key] = CacheEntry(
                data=data,
                timestamp=self._clock.time(),
                ttl=effective_ttl,
            )
        except Exception as exc:
            logger.warning("Cache SET failed for %s: %s", key, exc)
            return
        logger.debug("Cache SET for key %s (TTL %.0fs)", key, effective_ttl)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)
        logger.debug("Cache DELETE for key %s", key)

    def delete_prefix(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()
        logger.debug("Cache cleared")

    def cleanup(self) -> int:
        """Remove every expired entry and return how many were dropped."""

        now = self._clock.time()
        expired = [key for key, entry in self._entries.items() if not entry.is_valid(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info("Cache cleanup removed %d expired entries", len(expired))
        return len(expired)

    def get_stats(self) -> CacheStats:
        counts = self._counters.snapshot()
        return CacheStats(
            size=len(self._entries),
            keys=list(self._entries.keys()),
            hits=counts["hits"],
            misses=counts["misses"],
        )

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[T | None]],
        ttl: float | None = None,
    ) -> T | None:
        """Return the cached value for *key*, calling *loader* on a miss.

        A ``None`` result from the loader is returned but not cached.
        """

        cached = self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        if value is not None:
            self.set(key, value, ttl)
        return value

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and entry.is_valid(self._clock.time())


class CacheKeys:
    """Key builders so every caller spells cache keys the same way."""

    DISCOVERY_STATS_PREFIX = "discovery:stats:"

    @staticmethod
    def directory_identifier(text: str) -> str:
        return f"directory:id:{' '.join(text.lower().split())}"

    @staticmethod
    def directory_details(identifier: str) -> str:
        return f"directory:details:{identifier}"

    @staticmethod
    def overpass_area(area_name: str) -> str:
        return f"overpass:area:{area_name.strip().lower()}"

    @classmethod
    def discovery_stats(cls, days: int) -> str:
        return f"{cls.DISCOVERY_STATS_PREFIX}{days}"
