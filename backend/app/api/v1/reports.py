"""
FastAPI routes: report creation and lifecycle.

    POST /api/v1/reports                 — create (notifies responders)
    GET  /api/v1/reports/{id}            — fetch one report with author and comments
    PUT  /api/v1/reports/{id}/status     — change status
    POST /api/v1/reports/{id}/radius     — manual radius expansion
    POST /api/v1/reports/{id}/abuse      — flag a report for moderation
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from backend.app.api.deps import get_container
from backend.app.api.schemas import (
    AbuseReportRequest,
    RadiusExpandRequest,
    ReportCreateRequest,
    ReportStatusRequest,
)
from backend.app.container import ServiceContainer

router = APIRouter(prefix="/api/v1/reports", tags=["reports"])


@router.post("", status_code=201, summary="Create a report")
async def create_report(
    request: ReportCreateRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    report = await container.report_service.create_report(request.to_draft())
    return {"message": "Report created successfully", "report": report.to_dict()}


@router.get("/{report_id}", summary="Get a report")
async def get_report(
    report_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    detail = await container.report_service.get_report_detail(report_id)
    return {"report": detail.to_dict()}


@router.put("/{report_id}/status", summary="Update report status")
async def update_status(
    report_id: str,
    request: ReportStatusRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    report = await container.report_service.update_status(report_id, request.status)
    return {"message": "Report updated successfully", "report": report.to_dict()}


@router.post("/{report_id}/radius", summary="Expand the alert radius (admin)")
async def expand_radius(
    report_id: str,
    request: RadiusExpandRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    report = await container.report_service.expand_radius(
        report_id, request.radius, request.reason, actor_id=request.actor_id,
    )
    return {"message": "Radius expanded", "report": report.to_dict()}


@router.post("/{report_id}/abuse", status_code=201, summary="Report abuse")
async def report_abuse(
    report_id: str,
    request: AbuseReportRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    abuse = await container.report_service.report_abuse(
        report_id, request.reporter_id, request.reason, request.details,
    )
    return {"message": "Abuse report submitted", "abuse_report": abuse.to_dict()}
