"""
FastAPI routes: radius expansion job introspection and manual trigger.

    GET  /api/v1/jobs/radius-expansion       — scheduler status + last cycle
    POST /api/v1/jobs/radius-expansion/run   — run one cycle now

A manual run obeys the same rules as a scheduled tick: if a cycle is
already running, the response reports it as skipped.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from backend.app.api.deps import get_container
from backend.app.container import ServiceContainer

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


@router.get("/radius-expansion", summary="Radius expansion job status")
async def radius_job_status(
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    return container.engine.status()


@router.post("/radius-expansion/run", summary="Run one radius expansion cycle now")
async def run_radius_cycle(
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    result = await container.engine.run_cycle()
    return result.to_dict()
