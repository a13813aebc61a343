"""CLI entry point: discover venues for an area and optionally enrich them."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Sequence

from .config import DEFAULT_STORE_PATH, Settings
from .directory import DISCOVERY_SOURCE
from .discovery_overpass import SOURCE_NAME as OVERPASS_SOURCE, normalize_overpass_urls
from .models import DiscoverySummary
from .service import PipelineService

logger = logging.getLogger(__name__)


def main(argv: Sequence[str] | None = None) -> int:
    """Execute the CLI."""

    settings = Settings.from_env()
    args = _parse_args(argv, settings)
    _configure_logging(args.log_level)

    settings = replace(
        settings,
        store_path=Path(args.store),
        overpass_urls=_merge_urls(settings.overpass_urls, args.overpass_url),
    )
    if args.amenities:
        settings = replace(settings, discovery_amenities=tuple(_parse_amenities(args.amenities)))

    sources = _parse_sources(args.sources) if args.sources else None
    logger.info("Discovering venues in '%s'", args.area)
    summary = asyncio.run(_run(settings, args.area, sources=sources, enrich=args.enrich))
    print(json.dumps(summary.to_dict(), indent=2))
    return 1 if summary.has_errors and not summary.saved else 0


async def _run(
    settings: Settings,
    area: str,
    *,
    sources: list[str] | None,
    enrich: bool,
) -> DiscoverySummary:
    service = PipelineService.from_settings(settings)
    await service.start()
    try:
        summary = await service.run_discovery(area, sources=sources, enqueue=enrich)
        if enrich and summary.queued_for_enrichment:
            logger.info("Waiting for %d enrichment jobs", summary.queued_for_enrichment)
            await service.queue.join()
            stats = service.get_queue_stats()
            logger.info(
                "Enrichment finished: %d completed, %d dropped, %d still scheduled",
                stats.completed_today,
                stats.dropped_today + stats.exhausted_today,
                stats.queue_length,
            )
        return summary
    finally:
        await service.stop()


def _parse_args(argv: Sequence[str] | None, settings: Settings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--area", required=True, help="Area to search, e.g. 'Lagos' or 'Ikeja'")
    parser.add_argument(
        "--sources",
        default=None,
        help="Comma-separated discovery sources (default: all configured)",
    )
    parser.add_argument(
        "--amenities",
        default=None,
        help="Comma-separated OSM amenity types for the Overpass source",
    )
    parser.add_argument(
        "--store",
        default=str(settings.store_path or DEFAULT_STORE_PATH),
        help="Path to the JSON location store",
    )
    parser.add_argument(
        "--overpass-url",
        default=None,
        help="Override the Overpass API endpoint",
    )
    parser.add_argument(
        "--enrich",
        action="store_true",
        help="Queue saved locations for enrichment and wait for the queue to drain",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        help="Logging level (e.g. INFO, DEBUG)",
    )
    return parser.parse_args(argv)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _parse_amenities(value: str) -> list[str]:
    amenities = [item.strip() for item in value.split(",") if item.strip()]
    if not amenities:
        raise SystemExit("At least one amenity must be provided")
    return amenities


def _parse_sources(value: str) -> list[str]:
    aliases = {
        "overpass": OVERPASS_SOURCE,
        "osm": OVERPASS_SOURCE,
        "directory": DISCOVERY_SOURCE,
        "places": DISCOVERY_SOURCE,
    }
    return [aliases.get(item.strip().lower(), item.strip()) for item in value.split(",") if item.strip()]


def _merge_urls(configured: Sequence[str], override: str | None) -> tuple[str, ...]:
    # The override is tried before the configured endpoints
    return tuple(normalize_overpass_urls(None, [override or "", *configured], fallback=None))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
