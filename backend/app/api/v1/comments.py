"""
FastAPI route: sighting comments on reports.

    POST /api/v1/comments   — verified users only; notifies the report author
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from backend.app.api.deps import get_container
from backend.app.api.schemas import CommentCreateRequest
from backend.app.container import ServiceContainer

router = APIRouter(prefix="/api/v1/comments", tags=["comments"])


@router.post("", status_code=201, summary="Comment on a report")
async def create_comment(
    request: CommentCreateRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    comment = await container.report_service.add_comment(request.to_draft())
    return {"message": "Comment created successfully", "comment": comment.to_dict()}
