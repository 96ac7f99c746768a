"""
Pydantic schemas for the reports, comments, verification and jobs API.

Separated from the route handlers so they are reusable across
the codebase (background workers, tests).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from backend.app.reports.models import ReportStatus, UserRole, VerificationStatus
from backend.app.reports.service import CommentDraft, ReportDraft


def _upper(value: Any) -> Any:
    return value.strip().upper() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

class ReportCreateRequest(BaseModel):
    """Request body for POST /api/v1/reports."""
    title: str = Field(..., min_length=1, examples=["Missing: Priya, 14"])
    description: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1, examples=["MISSING_PERSON"])
    latitude: float = Field(..., ge=-90.0, le=90.0, examples=[13.0827])
    longitude: float = Field(..., ge=-180.0, le=180.0, examples=[80.2707])
    location: str = Field(..., min_length=1, examples=["T. Nagar, Chennai"])
    contact_info: str = Field(..., min_length=1)
    author_id: str = Field(..., min_length=1, description="Reporting user id")
    author_name: str = ""
    author_type: UserRole = UserRole.CITIZEN
    initial_radius: Optional[float] = Field(
        None, gt=0, le=500.0,
        description="Alert radius in km (server default when omitted)",
    )
    sub_category: Optional[str] = None
    priority: Optional[str] = "MEDIUM"
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    emergency_contact: Optional[str] = None
    reward: Optional[str] = None
    last_seen: Optional[datetime] = None
    age: Optional[int] = Field(None, ge=0, le=150)
    gender: Optional[str] = None
    clothing: Optional[str] = None
    special_marks: Optional[str] = None

    @field_validator("author_type", mode="before")
    @classmethod
    def normalise_author_type(cls, value: Any) -> Any:
        return _upper(value)

    def to_draft(self) -> ReportDraft:
        data = self.model_dump()
        data["author_type"] = self.author_type.value
        return ReportDraft(**data)


class ReportStatusRequest(BaseModel):
    status: ReportStatus = Field(..., examples=["RESOLVED"])

    @field_validator("status", mode="before")
    @classmethod
    def normalise_status(cls, value: Any) -> Any:
        return _upper(value)


class RadiusExpandRequest(BaseModel):
    """Manual (admin) radius change; must not shrink the current radius."""
    radius: float = Field(..., gt=0, le=1000.0, examples=[25.0])
    reason: Optional[str] = Field(None, max_length=500)
    actor_id: Optional[str] = Field(None, description="Admin performing the change")


class AbuseReportRequest(BaseModel):
    reporter_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=300, examples=["Fake report"])
    details: Optional[str] = Field(None, max_length=2000)


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------

class CommentCreateRequest(BaseModel):
    report_id: str = Field(..., min_length=1)
    author_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1, max_length=2000)
    location: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90.0, le=90.0)
    longitude: Optional[float] = Field(None, ge=-180.0, le=180.0)

    def to_draft(self) -> CommentDraft:
        return CommentDraft(**self.model_dump())


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

class VerificationDecisionRequest(BaseModel):
    status: VerificationStatus = Field(..., examples=["APPROVED"])
    notes: Optional[str] = Field(None, max_length=1000)
    actor_id: Optional[str] = Field(None, description="Reviewer making the decision")

    @field_validator("status", mode="before")
    @classmethod
    def normalise_status(cls, value: Any) -> Any:
        return _upper(value)

    @field_validator("status")
    @classmethod
    def must_be_decision(cls, value: VerificationStatus) -> VerificationStatus:
        if value == VerificationStatus.PENDING:
            raise ValueError("status must be APPROVED or REJECTED")
        return value
