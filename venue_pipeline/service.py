"""Service object that wires the store, cache, queue and discovery sources."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Iterable, Sequence

from .cache import CLEANUP_INTERVAL_SECONDS, CacheKeys, TTLCache
from .clock import Clock, SystemClock
from .config import Settings
from .dedup import DEFAULT_THRESHOLDS, DuplicateCheck, SimilarityThresholds, check_duplicate, is_duplicate
from .directory import DirectoryClient, DirectorySearchSource, PlacesDirectoryClient
from .discovery_overpass import OverpassSource
from .enrichment import EnrichmentQueue, QueueSettings, QueueStats
from .models import STATUS_APPROVED, CandidateRecord, DiscoverySummary, EnrichmentJob, Location, Priority
from .orchestrator import DEFAULT_RULES, CandidateRules, DiscoveryOrchestrator, DiscoverySource
from .store import InMemoryLocationStore, JsonFileLocationStore, LocationStore
from .tasks import PeriodicTask

logger = logging.getLogger(__name__)

DISCOVERY_STATS_TTL_SECONDS = 5 * 60


class PipelineService:
    """Single entry point used by the CLI and the web layer.

    Owns the background tasks: the cache sweeper and the enrichment queue's
    loop. Call :meth:`start` once an event loop is running and :meth:`stop`
    before it closes.
    """

    def __init__(
        self,
        *,
        store: LocationStore,
        directory: DirectoryClient,
        clock: Clock | None = None,
        cache: TTLCache | None = None,
        sources: Sequence[DiscoverySource] = (),
        queue_settings: QueueSettings | None = None,
        thresholds: SimilarityThresholds = DEFAULT_THRESHOLDS,
        rules: CandidateRules = DEFAULT_RULES,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
        discovery_enabled: bool = True,
    ) -> None:
        self.clock = clock or SystemClock()
        self.store = store
        self.directory = directory
        self.cache = cache or TTLCache(clock=self.clock)
        self.sources = list(sources)
        self.thresholds = thresholds
        self.discovery_enabled = discovery_enabled
        self.queue = EnrichmentQueue(store, directory, clock=self.clock, settings=queue_settings)
        self.orchestrator = DiscoveryOrchestrator(
            store,
            self.queue,
            clock=self.clock,
            thresholds=thresholds,
            rules=rules,
        )
        self._sweeper = PeriodicTask("cache-cleanup", self.cache.cleanup, interval=cleanup_interval)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: LocationStore | None = None,
        clock: Clock | None = None,
    ) -> "PipelineService":
        clock = clock or SystemClock()
        cache = TTLCache(default_ttl=settings.cache_default_ttl, clock=clock)
        if store is None:
            store = (
                JsonFileLocationStore(settings.store_path)
                if settings.store_path is not None
                else InMemoryLocationStore()
            )

        directory = PlacesDirectoryClient(
            api_key=settings.places_api_key,
            base_url=settings.places_api_base,
            cache=cache,
            user_agent=settings.user_agent,
            concurrency=settings.enrichment_max_concurrent,
            connect_timeout=settings.http_connect_timeout,
            read_timeout=settings.http_read_timeout,
        )
        if not directory.configured:
            logger.warning("GOOGLE_PLACES_API_KEY is not set; enrichment lookups will be dropped")

        sources: list[DiscoverySource] = [
            OverpassSource(
                amenities=settings.discovery_amenities,
                name_pattern=settings.discovery_name_pattern,
                overpass_urls=settings.overpass_urls,
                cache=cache,
                user_agent=settings.user_agent,
            )
        ]
        if directory.configured:
            sources.append(DirectorySearchSource(directory, query=settings.discovery_query))

        return cls(
            store=store,
            directory=directory,
            clock=clock,
            cache=cache,
            sources=sources,
            queue_settings=QueueSettings(
                max_concurrent=settings.enrichment_max_concurrent,
                batch_delay=settings.enrichment_batch_delay,
                retry_delay=settings.enrichment_retry_delay,
                max_attempts=settings.enrichment_max_attempts,
                freshness=timedelta(days=settings.enrichment_freshness_days),
                photo_url_template=settings.photo_url_template,
            ),
            thresholds=SimilarityThresholds(
                name=settings.dedup_name_threshold,
                address=settings.dedup_address_threshold,
                min_name_length=settings.dedup_min_name_length,
            ),
            rules=CandidateRules(
                min_confidence=settings.discovery_min_confidence,
                keywords=settings.discovery_keywords,
            ),
            cleanup_interval=settings.cache_cleanup_interval,
            discovery_enabled=settings.discovery_enabled,
        )

    @property
    def source_names(self) -> list[str]:
        return [source.name for source in self.sources]

    async def start(self) -> None:
        self._sweeper.start()
        self.queue.start()
        logger.info("Pipeline started with sources: %s", ", ".join(self.source_names) or "none")

    async def stop(self) -> None:
        await self.queue.stop()
        await self._sweeper.stop()
        for resource in [*self.sources, self.directory]:
            close = getattr(resource, "aclose", None)
            if close is not None:
                await close()
        logger.info("Pipeline stopped")

    async def run_discovery(
        self,
        area: str,
        *,
        sources: Iterable[str] | None = None,
        enqueue: bool = True,
    ) -> DiscoverySummary:
        """Collect candidates for *area* from every source and ingest them.

        A failing source is reported in ``source_errors`` and does not stop
        the others.
        """

        wanted = set(sources) if sources is not None else None
        selected = [s for s in self.sources if wanted is None or s.name in wanted]
        results = await asyncio.gather(
            *(source.discover(area) for source in selected),
            return_exceptions=True,
        )

        candidates: list[CandidateRecord] = []
        source_errors: dict[str, str] = {}
        for source, result in zip(selected, results):
            if isinstance(result, BaseException):
                logger.warning("Discovery source %s failed for %s: %s", source.name, area, result)
                source_errors[source.name] = str(result)
                continue
            logger.info("Source %s found %d candidates in %s", source.name, len(result), area)
            candidates.extend(result)

        summary = await self.orchestrator.ingest(candidates, enqueue=enqueue)
        summary.source_errors.update(source_errors)
        if summary.saved:
            self._invalidate_discovery_stats()
        return summary

    def enqueue_for_enrichment(
        self,
        location_id: str,
        address: str,
        priority: Priority | str = Priority.MEDIUM,
    ) -> EnrichmentJob:
        return self.queue.enqueue(location_id, address, priority)

    async def enqueue_locations(
        self,
        location_ids: Iterable[str],
        priority: Priority | str = Priority.MEDIUM,
    ) -> int:
        """Queue specific stored locations; unknown ids are skipped."""

        queued = 0
        for location_id in location_ids:
            location = await self.store.get_by_id(location_id)
            if location is None:
                logger.warning("Location %s not found, not queued", location_id)
                continue
            self.queue.enqueue(location.id, location.address, priority)
            queued += 1
        return queued

    async def enqueue_unenriched(self, *, status: str | None = None) -> int:
        if status is None:
            locations = await self.store.list_all()
        else:
            locations = await self.store.query_by_field("status", status)
        return self.queue.enqueue_stale(locations)

    async def enqueue_approved(self) -> int:
        return await self.enqueue_unenriched(status=STATUS_APPROVED)

    def get_queue_stats(self) -> QueueStats:
        return self.queue.get_queue_stats()

    def is_duplicate(self, candidate: Any, catalog: Iterable[Any]) -> bool:
        return is_duplicate(candidate, catalog, thresholds=self.thresholds)

    async def check_duplicate(self, candidate: Any) -> DuplicateCheck:
        catalog: list[Location] = await self.store.list_all()
        return check_duplicate(candidate, catalog, thresholds=self.thresholds)

    async def discovery_stats(self, days: int = 30) -> dict[str, Any]:
        """Counts of discovered locations per source and status over *days* days."""

        return await self.cache.get_or_load(
            CacheKeys.discovery_stats(days),
            lambda: self._compute_discovery_stats(days),
            DISCOVERY_STATS_TTL_SECONDS,
        )

    async def _compute_discovery_stats(self, days: int) -> dict[str, Any]:
        since = self.clock.now() - timedelta(days=days)
        by_source: dict[str, int] = {}
        by_status: dict[str, int] = {}
        total = 0
        for location in await self.store.list_all():
            if not location.discovery_source:
                continue
            submitted = location.submitted_at
            if submitted is not None and submitted.tzinfo is None:
                submitted = submitted.replace(tzinfo=since.tzinfo)
            if submitted is not None and submitted < since:
                continue
            total += 1
            by_source[location.discovery_source] = by_source.get(location.discovery_source, 0) + 1
            by_status[location.status] = by_status.get(location.status, 0) + 1
        return {
            "days": days,
            "totalDiscovered": total,
            "bySource": by_source,
            "byStatus": by_status,
        }

    def _invalidate_discovery_stats(self) -> None:
        self.cache.delete_prefix(CacheKeys.DISCOVERY_STATS_PREFIX)
