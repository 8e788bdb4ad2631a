"""FastAPI route definitions: the remote command surface of the harvester.

Endpoints:
- GET    /health                    : Liveness + collection state
- GET    /metrics                   : Prometheus metrics
- POST   /api/collection/start      : Start a session (optional settings overrides, resume flag)
- POST   /api/collection/pause      : Pause the running session
- POST   /api/collection/resume     : Resume a paused session
- POST   /api/collection/stop       : Stop the session and persist
- GET    /api/collection/status     : Controller status
- GET    /api/records               : Records (pagination, sort, collection-time window)
- GET    /api/records/stats         : Field coverage and average likes / collects / comments
- DELETE /api/records               : Clear stored records
- POST   /api/export                : Write an export file (csv / json / excel)
- GET    /api/export/{filename}     : Download a previously written export
- GET    /api/settings              : Effective session settings
- PUT    /api/settings              : Validate and save session settings
- DELETE /api/settings              : Back to defaults
- GET    /api/storage               : Storage info (count, size, last update)
- GET    /api/page                  : Live page stats (cards, scroll position, bottom)
- GET    /api/ping                  : Ping
- GET    /stream                    : SSE stream of controller events

Rejected commands answer 409 with the command result; invalid settings 422.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from harvester.bootstrap import get_context
from harvester.errors import BrowserError, ConfigError, ExportError, StorageError
from harvester.models import CommandResult
from harvester.service import HarvestService

from .events import EventType, broadcast, sse_event_iter

router = APIRouter()

_service: Optional[HarvestService] = None


async def get_service() -> HarvestService:
    """Lazily build the process-wide service (lifespan or first request)."""
    global _service
    if _service is None:
        ctx = await get_context()
        service = HarvestService(ctx.settings)
        service.add_listener(broadcast)
        _service = service
    return _service


def set_service(service: Optional[HarvestService]) -> None:
    global _service
    _service = service


class StartRequest(BaseModel):
    settings: dict[str, Any] = Field(default_factory=dict)
    resume: bool = False


class ExportRequest(BaseModel):
    format: str = "csv"


def _command_response(result: CommandResult) -> JSONResponse:
    return JSONResponse(result.to_dict(), status_code=200 if result.success else 409)


@router.get("/health")
async def health(service: HarvestService = Depends(get_service)):
    status = service.status()
    return {"status": "ok", "state": status["state"], "mock_mode": status["mock_mode"]}


@router.get("/metrics")
async def metrics(service: HarvestService = Depends(get_service)):
    if not service.settings.enable_metrics:
        return Response(status_code=404)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ------------------------------------------------------------
# Collection commands
# ------------------------------------------------------------
@router.post("/api/collection/start")
async def start_collection(
    body: Optional[StartRequest] = Body(None),
    service: HarvestService = Depends(get_service),
):
    body = body or StartRequest()
    try:
        result = await service.start(body.settings, resume_previous=body.resume)
    except ConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except BrowserError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return _command_response(result)


@router.post("/api/collection/pause")
async def pause_collection(service: HarvestService = Depends(get_service)):
    return _command_response(await service.pause())


@router.post("/api/collection/resume")
async def resume_collection(service: HarvestService = Depends(get_service)):
    return _command_response(await service.resume())


@router.post("/api/collection/stop")
async def stop_collection(service: HarvestService = Depends(get_service)):
    return _command_response(await service.stop())


@router.get("/api/collection/status")
async def collection_status(service: HarvestService = Depends(get_service)):
    return service.status()


# ------------------------------------------------------------
# Records & export
# ------------------------------------------------------------
@router.get("/api/records")
async def list_records(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=5000),
    sort: Optional[str] = Query(None, description="collected_at, likes, collects or comments"),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    start: Optional[str] = Query(None, description="collected on or after (epoch ms or ISO date)"),
    end: Optional[str] = Query(None, description="collected on or before (epoch ms or ISO date)"),
    service: HarvestService = Depends(get_service),
):
    try:
        matched = service.query_records(sort_by=sort, order=order, start=start, end=end)
    except ConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    items = matched[skip : skip + limit]
    return {"items": [r.to_dict() for r in items], "total": len(matched), "skip": skip, "limit": limit}


@router.get("/api/records/stats")
async def record_stats(service: HarvestService = Depends(get_service)):
    try:
        return service.data_stats()
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@router.delete("/api/records")
async def clear_records(service: HarvestService = Depends(get_service)):
    result = await service.clear()
    if result.success:
        await broadcast({"type": EventType.DATA_CLEARED.value})
    return _command_response(result)


@router.post("/api/export")
async def export(body: Optional[ExportRequest] = Body(None), service: HarvestService = Depends(get_service)):
    body = body or ExportRequest()
    try:
        result = service.export(body.format)
    except ExportError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return result.to_dict()


@router.get("/api/export/{filename}")
async def download_export(filename: str, service: HarvestService = Depends(get_service)):
    export_dir = Path(service.settings.export_dir).resolve()
    target = (export_dir / filename).resolve()
    if target.parent != export_dir or not target.is_file():
        raise HTTPException(status_code=404, detail="export not found")
    return FileResponse(str(target), filename=target.name)


# ------------------------------------------------------------
# Settings & storage
# ------------------------------------------------------------
@router.get("/api/settings")
async def get_settings(service: HarvestService = Depends(get_service)):
    return service.get_settings()


@router.put("/api/settings")
async def update_settings(payload: dict[str, Any] = Body(...), service: HarvestService = Depends(get_service)):
    try:
        return service.update_settings(payload)
    except ConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.delete("/api/settings")
async def reset_settings(service: HarvestService = Depends(get_service)):
    return service.reset_settings()


@router.get("/api/storage")
async def storage_info(service: HarvestService = Depends(get_service)):
    return service.storage_info()


@router.get("/api/page")
async def page_stats(service: HarvestService = Depends(get_service)):
    return await service.page_stats()


@router.get("/api/ping")
async def ping(service: HarvestService = Depends(get_service)):
    return service.ping()


@router.get("/stream")
async def stream():
    """SSE stream of controller events.

    Client JS example:
        const es = new EventSource('/stream');
        es.onmessage = ev => console.log(JSON.parse(ev.data));
    """
    return StreamingResponse(sse_event_iter(), media_type="text/event-stream")
