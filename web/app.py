"""FastAPI glue exposing discovery, the enrichment queue and the cache."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse

from venue_pipeline.config import Settings
from venue_pipeline.dedup import DuplicateCheck
from venue_pipeline.models import CandidateRecord, Coordinates, Priority
from venue_pipeline.service import PipelineService

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
logging.getLogger("httpx").setLevel(logging.INFO)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

ENRICHMENT_ACTIONS = (
    "queue-all-unenriched",
    "queue-specific",
    "queue-approved",
    "clear-queue",
)


def _service(request: Request) -> PipelineService:
    return request.app.state.service


def _error(message: str, status_code: int, **extra: Any) -> JSONResponse:
    return JSONResponse({"success": False, "error": message, **extra}, status_code=status_code)


def _candidate_from_payload(payload: dict) -> CandidateRecord:
    coords = payload.get("coordinates") or {}
    coordinates = None
    if coords.get("lat") is not None and coords.get("lng") is not None:
        coordinates = Coordinates(lat=float(coords["lat"]), lng=float(coords["lng"]))
    return CandidateRecord(
        name=str(payload.get("name") or ""),
        address=str(payload.get("address") or ""),
        source=str(payload.get("source") or "manual"),
        coordinates=coordinates,
        phone=payload.get("phone"),
        website=payload.get("website"),
    )


def _duplicate_payload(result: DuplicateCheck) -> dict[str, Any]:
    return {
        "isDuplicate": result.is_duplicate,
        "confidence": result.confidence,
        "reasons": list(result.reasons),
        "matches": [
            {"id": match.id, "name": match.name, "address": match.address, "status": match.status}
            for match in result.matches
        ],
    }


def create_app(service: PipelineService | None = None) -> FastAPI:
    """Build the app; without *service* one is created from the environment at startup."""

    app = FastAPI(title="Venue Pipeline")
    app.state.service = service

    @app.on_event("startup")
    async def _on_startup() -> None:
        if app.state.service is None:
            settings = Settings.from_env()
            logging.getLogger().setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
            app.state.service = PipelineService.from_settings(settings)
        await app.state.service.start()

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        if app.state.service is not None:
            await app.state.service.stop()

    @app.get("/discovery")
    def discovery_status(request: Request):
        service = _service(request)
        return {
            "success": True,
            "data": {
                "enabled": service.discovery_enabled,
                "sources": service.source_names,
            },
        }

    @app.post("/discovery")
    async def run_discovery(request: Request, payload: dict = Body(...)):
        service = _service(request)
        if not service.discovery_enabled:
            return _error("Discovery feature is disabled", 503)

        area = str(payload.get("area") or "").strip()
        if not area:
            return _error("area is required", 400)
        sources = payload.get("sources")
        if sources is not None and not isinstance(sources, list):
            return _error("sources must be a list", 400)

        summary = await service.run_discovery(
            area,
            sources=sources,
            enqueue=bool(payload.get("enqueue", True)),
        )
        return {
            "success": True,
            "message": f"Discovered {summary.total_discovered} locations in {area}",
            "data": summary.to_dict(),
        }

    @app.get("/discovery/stats")
    async def discovery_stats(request: Request, days: int = 30):
        stats = await _service(request).discovery_stats(max(1, days))
        return {"success": True, "data": stats}

    @app.get("/jobs/enrichment")
    def enrichment_stats(request: Request):
        stats = _service(request).get_queue_stats()
        return {
            "success": True,
            "data": {
                **stats.to_dict(),
                "description": "Background enrichment queue statistics",
                "availableActions": list(ENRICHMENT_ACTIONS),
            },
        }

    @app.post("/jobs/enrichment")
    async def enrichment_action(request: Request, payload: dict = Body(...)):
        service = _service(request)
        action = payload.get("action")
        try:
            priority = Priority.coerce(payload.get("priority") or Priority.MEDIUM)
        except ValueError as exc:
            return _error(str(exc), 400)

        if action == "queue-all-unenriched":
            queued = await service.enqueue_unenriched()
            message = f"Queued {queued} locations for background enrichment"
        elif action == "queue-specific":
            location_ids = payload.get("locationIds")
            if not isinstance(location_ids, list):
                return _error("locationIds array is required", 400)
            queued = await service.enqueue_locations(location_ids, priority)
            message = f"Queued {queued} of {len(location_ids)} specific locations for enrichment"
        elif action == "queue-approved":
            queued = await service.enqueue_approved()
            message = f"Queued {queued} approved locations for enrichment"
        elif action == "clear-queue":
            service.queue.clear()
            message = "Enrichment queue cleared"
        else:
            return _error(f"Invalid action. Use: {', '.join(ENRICHMENT_ACTIONS)}", 400)

        return {
            "success": True,
            "message": message,
            "data": service.get_queue_stats().to_dict(),
        }

    @app.get("/cache/stats")
    def cache_stats(request: Request):
        return {"success": True, "data": _service(request).cache.get_stats().to_dict()}

    @app.delete("/cache")
    def clear_cache(request: Request):
        _service(request).cache.clear()
        return {"success": True, "message": "Cache cleared"}

    @app.post("/duplicates/check")
    async def check_duplicate(request: Request, payload: dict = Body(...)):
        candidate = _candidate_from_payload(payload)
        if not candidate.name.strip():
            return _error("name is required", 400)
        result = await _service(request).check_duplicate(candidate)
        return {"success": True, "data": _duplicate_payload(result)}

    return app


app = create_app()
