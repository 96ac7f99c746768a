"""
models.py — Shared data structures for reports, users and notifications.

Defines:
    • ReportStatus / ExpandedBy / UserRole / VerificationStatus enums
    • NotificationType — the five notification kinds
    • RadiusHistoryEntry — one provenance record per radius change
    • Report           — a missing-person / incident report
    • User / UserRef   — directory record and the slice the dispatcher needs
    • Notification     — a persisted per-recipient notification
    • Comment          — a sighting comment on a report
    • AbuseReport      — a user flagging a report for moderators
    • AuditLogEntry    — who did what to which entity
    • ReportDetail     — a report with its author and comments, for reads

═══════════════════════════════════════════════════════════════════════════
RADIUS PROVENANCE
═══════════════════════════════════════════════════════════════════════════

    radius_history is append-only and is the source of truth for when the
    alert radius last changed. last_radius_expand is a cached copy of the
    newest entry's timestamp; stores always write both in the same atomic
    update. Reports created before history existed may carry an empty list,
    in which case the scalar (or created_at) is used.

    current_radius never decreases while the report is ACTIVE:

        initial_radius ≤ history[0].radius ≤ ... ≤ history[-1].radius
                                               == current_radius
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class ReportStatus(str, Enum):
    ACTIVE   = "ACTIVE"
    RESOLVED = "RESOLVED"
    EXPIRED  = "EXPIRED"


class ExpandedBy(str, Enum):
    """Who widened the radius."""
    SYSTEM = "SYSTEM"
    ADMIN  = "ADMIN"


class UserRole(str, Enum):
    CITIZEN      = "CITIZEN"
    POLICE       = "POLICE"
    GOVERNMENT   = "GOVERNMENT"
    SECURITY     = "SECURITY"
    NGO          = "NGO"
    MEDICAL      = "MEDICAL"
    TEACHER      = "TEACHER"
    LOCAL_LEADER = "LOCAL_LEADER"


class VerificationStatus(str, Enum):
    PENDING  = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class NotificationType(str, Enum):
    REPORT_CREATED      = "REPORT_CREATED"
    RADIUS_EXPANDED     = "RADIUS_EXPANDED"
    NEW_COMMENT         = "NEW_COMMENT"
    REPORT_RESOLVED     = "REPORT_RESOLVED"
    VERIFICATION_STATUS = "VERIFICATION_STATUS"


class AbuseStatus(str, Enum):
    OPEN      = "OPEN"
    REVIEWED  = "REVIEWED"
    DISMISSED = "DISMISSED"


class AuditAction(str, Enum):
    REPORT_ABUSE        = "REPORT_ABUSE"
    REVIEW_VERIFICATION = "REVIEW_VERIFICATION"
    EXPAND_RADIUS       = "EXPAND_RADIUS"


class AuditEntityType(str, Enum):
    USER    = "USER"
    REPORT  = "REPORT"
    COMMENT = "COMMENT"
    SYSTEM  = "SYSTEM"


# Roles that receive new-report alerts. Citizens are not responders.
RESPONDER_ROLES: FrozenSet[UserRole] = frozenset({
    UserRole.POLICE,
    UserRole.NGO,
    UserRole.MEDICAL,
    UserRole.GOVERNMENT,
})


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def generate_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def format_km(radius: float) -> str:
    """10.0 → '10', 7.5 → '7.5'."""
    return f"{radius:g}"


# ═══════════════════════════════════════════════════════════════════════════
# Reports
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class RadiusHistoryEntry:
    radius: float
    expanded_at: datetime
    expanded_by: ExpandedBy = ExpandedBy.SYSTEM
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "radius": self.radius,
            "expanded_at": self.expanded_at.isoformat(),
            "expanded_by": self.expanded_by.value,
            "reason": self.reason,
        }


@dataclass
class Report:
    """
    A report whose alert radius widens over time while it stays ACTIVE.

    Attributes
    ----------
    initial_radius : float
        Radius in km fixed at creation.
    current_radius : float
        Radius in km now in force; never below initial_radius.
    last_radius_expand : datetime | None
        Cached timestamp of the newest radius_history entry.
    radius_history : list of RadiusHistoryEntry
        Append-only provenance log, oldest first.
    resolved_at : datetime | None
        Set the first time the report becomes RESOLVED.
    """
    title: str
    description: str
    category: str
    latitude: float
    longitude: float
    initial_radius: float
    current_radius: float
    author_id: str
    id: str = field(default_factory=generate_id)
    status: ReportStatus = ReportStatus.ACTIVE
    location: str = ""
    contact_info: str = ""
    author_name: str = ""
    author_type: str = UserRole.CITIZEN.value
    sub_category: Optional[str] = None
    priority: Optional[str] = "MEDIUM"
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    emergency_contact: Optional[str] = None
    reward: Optional[str] = None
    last_seen: Optional[datetime] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    clothing: Optional[str] = None
    special_marks: Optional[str] = None
    last_radius_expand: Optional[datetime] = None
    radius_history: List[RadiusHistoryEntry] = field(default_factory=list)
    resolved_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == ReportStatus.ACTIVE

    @property
    def last_expanded_at(self) -> datetime:
        """When the radius last changed (history first, then the cached scalar)."""
        if self.radius_history:
            return self.radius_history[-1].expanded_at
        return self.last_radius_expand or self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "sub_category": self.sub_category,
            "priority": self.priority,
            "status": self.status.value,
            "location": self.location,
            "city": self.city,
            "state": self.state,
            "pincode": self.pincode,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "initial_radius": self.initial_radius,
            "current_radius": self.current_radius,
            "contact_info": self.contact_info,
            "emergency_contact": self.emergency_contact,
            "reward": self.reward,
            "last_seen": _iso(self.last_seen),
            "age": self.age,
            "gender": self.gender,
            "clothing": self.clothing,
            "special_marks": self.special_marks,
            "author_id": self.author_id,
            "author_name": self.author_name,
            "author_type": self.author_type,
            "last_radius_expand": _iso(self.last_radius_expand),
            "radius_history": [e.to_dict() for e in self.radius_history],
            "resolved_at": _iso(self.resolved_at),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Users
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class PreferredChannels:
    sms: bool = True
    email: bool = True
    push: bool = True

    def to_dict(self) -> Dict[str, bool]:
        return {"sms": self.sms, "email": self.email, "push": self.push}


@dataclass
class UserRef:
    """The slice of a user the dispatcher needs to deliver a notification."""
    id: str
    phone: Optional[str] = None
    email: Optional[str] = None
    preferred_channels: PreferredChannels = field(default_factory=PreferredChannels)


@dataclass
class User:
    email: str
    first_name: str = ""
    last_name: str = ""
    id: str = field(default_factory=generate_id)
    phone: Optional[str] = None
    user_type: UserRole = UserRole.CITIZEN
    is_verified: bool = False
    verification_status: VerificationStatus = VerificationStatus.PENDING
    verification_notes: Optional[str] = None
    preferred_channels: PreferredChannels = field(default_factory=PreferredChannels)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_responder_eligible(self) -> bool:
        """Verified and approved; the gate for every broadcast audience."""
        return self.is_verified and self.verification_status == VerificationStatus.APPROVED

    def to_ref(self) -> UserRef:
        return UserRef(
            id=self.id,
            phone=self.phone,
            email=self.email,
            preferred_channels=PreferredChannels(**self.preferred_channels.to_dict()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "user_type": self.user_type.value,
            "is_verified": self.is_verified,
            "verification_status": self.verification_status.value,
            "verification_notes": self.verification_notes,
            "preferred_channels": self.preferred_channels.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Notifications & comments
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Notification:
    type: NotificationType
    title: str
    message: str
    user_id: str
    report_id: Optional[str] = None
    id: str = field(default_factory=generate_id)
    is_read: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "user_id": self.user_id,
            "report_id": self.report_id,
            "is_read": self.is_read,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Comment:
    report_id: str
    author_id: str
    content: str
    id: str = field(default_factory=generate_id)
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "report_id": self.report_id,
            "author_id": self.author_id,
            "content": self.content,
            "location": self.location,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Moderation & audit
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class AbuseReport:
    report_id: str
    reporter_id: str
    reason: str
    details: Optional[str] = None
    id: str = field(default_factory=generate_id)
    status: AbuseStatus = AbuseStatus.OPEN
    created_at: datetime = field(default_factory=utcnow)
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    resolution_notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "report_id": self.report_id,
            "reporter_id": self.reporter_id,
            "reason": self.reason,
            "details": self.details,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "reviewed_at": _iso(self.reviewed_at),
            "reviewed_by": self.reviewed_by,
            "resolution_notes": self.resolution_notes,
        }


@dataclass
class AuditLogEntry:
    """Append-only record of a moderator or user action."""
    action: AuditAction
    entity_type: AuditEntityType
    actor_id: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Read views
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ReportDetail:
    """
    A report as shown to readers: the author's directory record (when the
    author exists) and the sighting comments, newest first, each with the
    commenter's name.
    """
    report: Report
    author: Optional[User] = None
    comments: List[Comment] = field(default_factory=list)
    commenters: Dict[str, User] = field(default_factory=dict)

    def _author_dict(self) -> Dict[str, Any]:
        if self.author is not None:
            return {
                "id": self.author.id,
                "first_name": self.author.first_name,
                "last_name": self.author.last_name,
                "user_type": self.author.user_type.value,
            }
        return {
            "id": self.report.author_id,
            "first_name": self.report.author_name,
            "last_name": "",
            "user_type": self.report.author_type,
        }

    def to_dict(self) -> Dict[str, Any]:
        comments = []
        for comment in self.comments:
            data = comment.to_dict()
            user = self.commenters.get(comment.author_id)
            data["author"] = (
                {"id": user.id, "first_name": user.first_name, "last_name": user.last_name}
                if user else None
            )
            comments.append(data)
        return {
            **self.report.to_dict(),
            "author": self._author_dict(),
            "comments": comments,
        }
