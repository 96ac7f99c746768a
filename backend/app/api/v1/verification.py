"""
FastAPI route: reviewer decisions on user verification.

    POST /api/v1/verification/{user_id}/decision
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from backend.app.api.deps import get_container
from backend.app.api.schemas import VerificationDecisionRequest
from backend.app.container import ServiceContainer

router = APIRouter(prefix="/api/v1/verification", tags=["verification"])


@router.post("/{user_id}/decision", summary="Approve or reject a user")
async def decide(
    user_id: str,
    request: VerificationDecisionRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    user = await container.report_service.decide_verification(
        user_id, request.status, request.notes, actor_id=request.actor_id,
    )
    return {
        "message": f"User {request.status.value.lower()}",
        "user": user.to_dict(),
    }
