"""Background enrichment of stored locations with directory data.

Jobs are kept in three FIFO lanes (high, medium, low) and drained by a
self-starting loop that runs at most ``max_concurrent`` jobs per batch. All
state lives in memory and is lost on restart.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable

from .clock import Clock, DailyCounters, SystemClock
from .directory import DEFAULT_PHOTO_URL_TEMPLATE, DirectoryClient, build_enrichment_fields
from .models import STATUS_APPROVED, EnrichmentJob, Location, LookupResult, LookupStatus, Priority
from .store import LocationStore

logger = logging.getLogger(__name__)

PRIORITY_ORDER = (Priority.HIGH, Priority.MEDIUM, Priority.LOW)


class TransientLookupError(RuntimeError):
    """A directory call failed in a way that is worth retrying later."""


class JobOutcome(str, enum.Enum):
    COMPLETED = "completed"
    DEFERRED = "deferred"
    MISSING = "missing"
    FRESH = "fresh"
    NO_MATCH = "no_match"
    REJECTED = "rejected"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"


@dataclass(slots=True, frozen=True)
class QueueSettings:
    max_concurrent: int = 3
    batch_delay: float = 1.0
    retry_delay: float = 5 * 60
    max_attempts: int = 3
    freshness: timedelta = timedelta(days=7)
    photo_url_template: str = DEFAULT_PHOTO_URL_TEMPLATE


@dataclass(slots=True)
class QueueStats:
    queue_length: int
    is_processing: bool
    completed_today: int
    exhausted_today: int
    dropped_today: int
    priority_breakdown: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "queueLength": self.queue_length,
            "isProcessing": self.is_processing,
            "completedToday": self.completed_today,
            "exhaustedToday": self.exhausted_today,
            "droppedToday": self.dropped_today,
            "priorityBreakdown": dict(self.priority_breakdown),
        }


def is_fresh(location: Location, now: datetime, window: timedelta) -> bool:
    """True if *location* was successfully enriched less than *window* ago."""

    last = location.last_enriched
    if last is None:
        return False
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return now - last < window


class EnrichmentQueue:
    def __init__(
        self,
        store: LocationStore,
        directory: DirectoryClient,
        *,
        clock: Clock | None = None,
        settings: QueueSettings | None = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self._clock = clock or SystemClock()
        self._settings = settings or QueueSettings()
        if self._settings.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")

        self._lanes: dict[Priority, deque[EnrichmentJob]] = {p: deque() for p in PRIORITY_ORDER}
        self._counters = DailyCounters(self._clock, ("completed", "exhausted", "dropped"))
        self._task: asyncio.Task | None = None
        self._wakeup: asyncio.TimerHandle | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._stopped = False

    @property
    def settings(self) -> QueueSettings:
        return self._settings

    @property
    def is_processing(self) -> bool:
        return self._task is not None and not self._task.done()

    def __len__(self) -> int:
        return sum(len(lane) for lane in self._lanes.values())

    def pending_jobs(self) -> list[EnrichmentJob]:
        """Queued jobs in the order they will be taken."""

        return [job for priority in PRIORITY_ORDER for job in self._lanes[priority]]

    def enqueue(
        self,
        location_id: str,
        address: str,
        priority: Priority | str = Priority.MEDIUM,
    ) -> EnrichmentJob:
        now = self._clock.time()
        job = EnrichmentJob(
            location_id=location_id,
            address=address,
            priority=Priority.coerce(priority),
            created_at=now,
            scheduled_for=now,
            max_attempts=self._settings.max_attempts,
        )
        self._push(job)
        logger.info("Queued location %s for enrichment (priority: %s)", location_id, job.priority.value)
        self.wake()
        return job

    def enqueue_stale(self, locations: Iterable[Location]) -> int:
        """Queue every location not enriched within the freshness window."""

        now = self._clock.now()
        count = 0
        for location in locations:
            if is_fresh(location, now, self._settings.freshness):
                continue
            priority = Priority.HIGH if location.status == STATUS_APPROVED else Priority.MEDIUM
            self.enqueue(location.id, location.address, priority)
            count += 1
        logger.info("Queued %d locations for background enrichment", count)
        return count

    def clear(self) -> int:
        dropped = len(self)
        for lane in self._lanes.values():
            lane.clear()
        self._cancel_wakeup()
        logger.info("Enrichment queue cleared (%d jobs dropped)", dropped)
        return dropped

    def get_queue_stats(self) -> QueueStats:
        counts = self._counters.snapshot()
        return QueueStats(
            queue_length=len(self),
            is_processing=self.is_processing,
            completed_today=counts["completed"],
            exhausted_today=counts["exhausted"],
            dropped_today=counts["dropped"],
            priority_breakdown={p.value: len(self._lanes[p]) for p in PRIORITY_ORDER},
        )

    def start(self) -> None:
        self._stopped = False
        self.wake()

    def wake(self) -> None:
        """Start the processing loop if it is idle and there is work."""

        self._cancel_wakeup()
        if self._stopped or self.is_processing or not len(self):
            return
        self._idle.clear()
        self._task = asyncio.get_running_loop().create_task(self._run(), name="enrichment-queue")

    async def join(self) -> None:
        """Wait until the processing loop has gone idle."""

        await self._idle.wait()

    async def stop(self) -> None:
        """Stop after the in-flight batch; queued jobs stay queued."""

        self._stopped = True
        self._cancel_wakeup()
        task = self._task
        if task is not None and not task.done():
            await task

    async def process_job(self, job: EnrichmentJob) -> JobOutcome:
        if self._clock.time() < job.scheduled_for:
            self._push(job)
            return JobOutcome.DEFERRED

        try:
            outcome = await self._enrich(job)
        except Exception as exc:
            return self._retry_or_drop(job, exc)

        if outcome is JobOutcome.COMPLETED:
            self._counters.increment("completed")
        else:
            self._counters.increment("dropped")
        return outcome

    async def _enrich(self, job: EnrichmentJob) -> JobOutcome:
        logger.debug("Processing enrichment job for location %s", job.location_id)
        location = await self._store.get_by_id(job.location_id)
        if location is None:
            logger.warning("Location %s not found, skipping enrichment", job.location_id)
            return JobOutcome.MISSING

        if is_fresh(location, self._clock.now(), self._settings.freshness):
            logger.info("Location %s recently enriched, skipping", job.location_id)
            return JobOutcome.FRESH

        identifier = await self._directory.resolve_identifier(job.address)
        if not identifier.found:
            return self._lookup_failed(job, "place id", identifier)

        details = await self._directory.fetch_details(identifier.value)
        if not details.found:
            return self._lookup_failed(job, "place details", details)

        changes = build_enrichment_fields(
            details.value,
            location,
            enriched_at=self._clock.now(),
            photo_url_template=self._settings.photo_url_template,
        )
        await self._store.update(job.location_id, changes)
        logger.info("Successfully enriched location %s", job.location_id)
        return JobOutcome.COMPLETED

    def _lookup_failed(self, job: EnrichmentJob, what: str, result: LookupResult) -> JobOutcome:
        if result.status is LookupStatus.TRANSIENT_ERROR:
            raise TransientLookupError(f"{what} lookup failed: {result.message}")
        if result.status is LookupStatus.NO_MATCH:
            logger.info("No %s found for location %s", what, job.location_id)
            return JobOutcome.NO_MATCH
        logger.warning("Dropping location %s: %s lookup rejected (%s)", job.location_id, what, result.message)
        return JobOutcome.REJECTED

    def _retry_or_drop(self, job: EnrichmentJob, exc: Exception) -> JobOutcome:
        job.attempts += 1
        if job.attempts < job.max_attempts:
            job.scheduled_for = self._clock.time() + self._settings.retry_delay
            self._push(job)
            logger.warning(
                "Enrichment of %s failed (%s); retrying (attempt %d/%d)",
                job.location_id,
                exc,
                job.attempts,
                job.max_attempts,
            )
            return JobOutcome.RETRYING

        self._counters.increment("exhausted")
        logger.error(
            "Max attempts reached for location %s, giving up: %s",
            job.location_id,
            exc,
        )
        return JobOutcome.EXHAUSTED

    def _push(self, job: EnrichmentJob) -> None:
        self._lanes[job.priority].append(job)

    def _pop_batch(self) -> list[EnrichmentJob]:
        batch: list[EnrichmentJob] = []
        for priority in PRIORITY_ORDER:
            lane = self._lanes[priority]
            while lane and len(batch) < self._settings.max_concurrent:
                batch.append(lane.popleft())
        return batch

    def _next_due(self) -> float | None:
        times = [job.scheduled_for for lane in self._lanes.values() for job in lane]
        return min(times) if times else None

    async def _run(self) -> None:
        logger.info("Starting background enrichment processing")
        try:
            while len(self) and not self._stopped:
                next_due = self._next_due()
                if next_due is not None and next_due > self._clock.time():
                    self._arm_wakeup(next_due)
                    break

                batch = self._pop_batch()
                results = await asyncio.gather(
                    *(self.process_job(job) for job in batch),
                    return_exceptions=True,
                )
                for job, result in zip(batch, results):
                    if isinstance(result, BaseException):
                        logger.error("Enrichment job for %s crashed: %s", job.location_id, result)

                if len(self) and self._settings.batch_delay > 0 and not self._stopped:
                    await asyncio.sleep(self._settings.batch_delay)
        finally:
            self._task = None
            self._idle.set()
        logger.info("Background enrichment processing finished (%d jobs queued)", len(self))

    def _arm_wakeup(self, when: float) -> None:
        delay = max(0.0, when - self._clock.time())
        self._wakeup = asyncio.get_running_loop().call_later(delay, self.wake)
        logger.debug("No due enrichment jobs; waking up in %.0fs", delay)

    def _cancel_wakeup(self) -> None:
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None
