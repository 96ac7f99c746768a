"""
service.py — Report workflows and the notifications they trigger.

    create_report        → persist ACTIVE report → notify responders (once)
    get_report_detail    → report + author + comments (newest first)
    update_status        → status change         → REPORT_RESOLVED on entry
    expand_radius        → ADMIN expansion       → RADIUS_EXPANDED + audit
    add_comment          → persist comment       → NEW_COMMENT to the author
    report_abuse         → persist abuse report  → audit
    decide_verification  → review outcome        → VERIFICATION_STATUS + audit

The primary write always wins: if the follow-up notification or audit
entry fails, the failure is logged and the persisted record is still
returned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from backend.app.core.errors import NotFoundError, PermissionDeniedError, ValidationError
from backend.app.notifications.dispatcher import NotificationDispatcher
from backend.app.reports.models import (
    AbuseReport,
    AuditAction,
    AuditEntityType,
    AuditLogEntry,
    Comment,
    ExpandedBy,
    RadiusHistoryEntry,
    Report,
    ReportDetail,
    ReportStatus,
    User,
    UserRole,
    VerificationStatus,
    utcnow,
)
from backend.app.reports.store import (
    AbuseReportStore,
    AuditLog,
    CommentStore,
    InMemoryAbuseReportStore,
    InMemoryAuditLog,
    ReportStore,
    UserDirectory,
)

logger = logging.getLogger(__name__)

INITIAL_RADIUS_REASON = "Initial radius"


@dataclass
class ReportDraft:
    """Caller-supplied fields of a new report."""
    title: str
    description: str
    category: str
    latitude: float
    longitude: float
    author_id: str
    location: str = ""
    contact_info: str = ""
    author_name: str = ""
    author_type: str = UserRole.CITIZEN.value
    initial_radius: Optional[float] = None
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


@dataclass
class CommentDraft:
    report_id: str
    author_id: str
    content: str
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class ReportService:

    def __init__(
        self,
        reports: ReportStore,
        users: UserDirectory,
        comments: CommentStore,
        dispatcher: NotificationDispatcher,
        *,
        abuse_reports: Optional[AbuseReportStore] = None,
        audit_log: Optional[AuditLog] = None,
        default_radius_km: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._reports = reports
        self._users = users
        self._comments = comments
        self._dispatcher = dispatcher
        self._abuse_reports = abuse_reports or InMemoryAbuseReportStore()
        self._audit_log = audit_log or InMemoryAuditLog()
        self._default_radius = default_radius_km
        self._clock = clock

    # ─── Reports ──────────────────────────────────────────────────────

    async def create_report(self, draft: ReportDraft) -> Report:
        """
        Persist a new ACTIVE report and alert the responder audience once.

        The report starts at its initial radius with a single SYSTEM history
        entry, so the first automatic expansion falls due a full threshold
        after creation. When the author is in the user directory, the
        directory's name and role replace whatever the caller sent.
        """
        radius = draft.initial_radius if draft.initial_radius is not None else self._default_radius
        if radius <= 0:
            raise ValidationError("initial_radius must be positive", field="initial_radius")
        if not -90.0 <= draft.latitude <= 90.0 or not -180.0 <= draft.longitude <= 180.0:
            raise ValidationError("Coordinates out of range", field="latitude/longitude")

        author_name, author_type = draft.author_name, draft.author_type
        author = await self._users.get_user(draft.author_id)
        if author is not None:
            author_name = author.full_name
            author_type = author.user_type.value

        now = self._clock()
        report = Report(
            title=draft.title,
            description=draft.description,
            category=draft.category,
            latitude=draft.latitude,
            longitude=draft.longitude,
            initial_radius=radius,
            current_radius=radius,
            author_id=draft.author_id,
            location=draft.location,
            contact_info=draft.contact_info,
            author_name=author_name,
            author_type=author_type,
            sub_category=draft.sub_category,
            priority=draft.priority,
            city=draft.city,
            state=draft.state,
            pincode=draft.pincode,
            emergency_contact=draft.emergency_contact,
            reward=draft.reward,
            last_seen=draft.last_seen,
            age=draft.age,
            gender=draft.gender,
            clothing=draft.clothing,
            special_marks=draft.special_marks,
            last_radius_expand=now,
            radius_history=[
                RadiusHistoryEntry(
                    radius=radius,
                    expanded_at=now,
                    expanded_by=ExpandedBy.SYSTEM,
                    reason=INITIAL_RADIUS_REASON,
                )
            ],
            created_at=now,
            updated_at=now,
        )
        created = await self._reports.insert_report(report)
        logger.info(
            "Report %s created (%s, %g km)", created.id, created.category, radius,
            extra={"report_id": created.id, "user_id": created.author_id},
        )

        await self._notify_safely(
            "report created", created.id,
            lambda: self._dispatcher.notify_report_created(created),
        )
        return created

    async def get_report(self, report_id: str) -> Report:
        report = await self._reports.find_report_by_id(report_id)
        if report is None:
            raise NotFoundError("Report", report_id=report_id)
        return report

    async def get_report_detail(self, report_id: str) -> ReportDetail:
        report = await self.get_report(report_id)
        comments = await self._comments.find_comments_for_report(report_id)

        users: Dict[str, User] = {}
        for user_id in {report.author_id} | {c.author_id for c in comments}:
            user = await self._users.get_user(user_id)
            if user is not None:
                users[user_id] = user

        return ReportDetail(
            report=report,
            author=users.get(report.author_id),
            comments=comments,
            commenters={c.author_id: users[c.author_id] for c in comments if c.author_id in users},
        )

    async def update_status(self, report_id: str, status: ReportStatus) -> Report:
        previous = await self.get_report(report_id)
        updated = await self._reports.update_report_status(report_id, status, self._clock())
        logger.info(
            "Report %s status %s → %s", report_id, previous.status.value, status.value,
            extra={"report_id": report_id},
        )

        if status == ReportStatus.RESOLVED and previous.status != ReportStatus.RESOLVED:
            await self._notify_safely(
                "report resolved", report_id,
                lambda: self._dispatcher.notify_report_resolved(updated),
            )
        return updated

    async def expand_radius(
        self,
        report_id: str,
        new_radius: float,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Report:
        """Manual (ADMIN) expansion; also resets the automatic 24h clock."""
        if new_radius <= 0:
            raise ValidationError("radius must be positive", field="radius")

        updated = await self._reports.update_report_radius(
            report_id, new_radius, self._clock(),
            expanded_by=ExpandedBy.ADMIN, reason=reason,
        )
        logger.info(
            "Report %s radius set to %g km by admin", report_id, new_radius,
            extra={"report_id": report_id},
        )
        await self._audit(
            actor_id, AuditAction.EXPAND_RADIUS, AuditEntityType.REPORT, report_id,
            {"radius": new_radius, "reason": reason},
        )
        await self._notify_safely(
            "radius expanded", report_id,
            lambda: self._dispatcher.notify_radius_expansion(updated, new_radius),
        )
        return updated

    # ─── Comments ─────────────────────────────────────────────────────

    async def add_comment(self, draft: CommentDraft) -> Comment:
        author = await self._users.get_user(draft.author_id)
        if author is None:
            raise NotFoundError("User", user_id=draft.author_id)
        if not author.is_responder_eligible:
            raise PermissionDeniedError(
                "Only verified users can comment",
                user_id=author.id,
                verification_status=author.verification_status.value,
            )

        report = await self.get_report(draft.report_id)
        now = self._clock()
        comment = await self._comments.insert_comment(
            Comment(
                report_id=report.id,
                author_id=author.id,
                content=draft.content,
                location=draft.location,
                latitude=draft.latitude,
                longitude=draft.longitude,
                created_at=now,
                updated_at=now,
            )
        )
        await self._notify_safely(
            "new comment", report.id,
            lambda: self._dispatcher.notify_new_comment(report, comment),
        )
        return comment

    # ─── Abuse ────────────────────────────────────────────────────────

    async def report_abuse(
        self,
        report_id: str,
        reporter_id: str,
        reason: str,
        details: Optional[str] = None,
    ) -> AbuseReport:
        """File an OPEN abuse report against an existing report."""
        if not reason.strip():
            raise ValidationError("reason is required", field="reason")
        if await self._users.get_user(reporter_id) is None:
            raise NotFoundError("User", user_id=reporter_id)
        report = await self.get_report(report_id)

        abuse = await self._abuse_reports.insert_abuse_report(
            AbuseReport(
                report_id=report.id,
                reporter_id=reporter_id,
                reason=reason,
                details=details,
                created_at=self._clock(),
            )
        )
        logger.info(
            "Abuse report %s filed against report %s", abuse.id, report.id,
            extra={"report_id": report.id, "user_id": reporter_id},
        )
        await self._audit(
            reporter_id, AuditAction.REPORT_ABUSE, AuditEntityType.REPORT, report.id,
            {"reason": reason, "details": details},
        )
        return abuse

    # ─── Verification ─────────────────────────────────────────────────

    async def decide_verification(
        self,
        user_id: str,
        status: VerificationStatus,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> User:
        if status == VerificationStatus.PENDING:
            raise ValidationError("A decision must be APPROVED or REJECTED", field="status")

        user = await self._users.update_verification(user_id, status, notes, self._clock())
        logger.info(
            "User %s verification %s", user_id, status.value,
            extra={"user_id": user_id},
        )
        await self._audit(
            actor_id, AuditAction.REVIEW_VERIFICATION, AuditEntityType.USER, user_id,
            {"status": status.value, "notes": notes},
        )
        await self._notify_safely(
            "verification status", None,
            lambda: self._dispatcher.notify_verification_status(user),
        )
        return user

    # ─── Helpers ──────────────────────────────────────────────────────

    async def _audit(
        self,
        actor_id: Optional[str],
        action: AuditAction,
        entity_type: AuditEntityType,
        entity_id: Optional[str],
        metadata: Dict[str, Any],
    ) -> None:
        try:
            await self._audit_log.append(
                AuditLogEntry(
                    action=action,
                    entity_type=entity_type,
                    actor_id=actor_id,
                    entity_id=entity_id,
                    metadata=metadata,
                    created_at=self._clock(),
                )
            )
        except Exception:
            logger.exception(
                "Failed to record audit entry %s for %s %s",
                action.value, entity_type.value, entity_id,
            )

    async def _notify_safely(
        self,
        label: str,
        report_id: Optional[str],
        notify: Callable[[], Awaitable[object]],
    ) -> None:
        try:
            await notify()
        except Exception:
            logger.exception(
                "Failed to send %s notifications (report %s)", label, report_id,
                extra={"report_id": report_id},
            )
