"""
sql_store.py — SQLAlchemy implementations of the store interfaces.

Each public method opens its own session and transaction. The radius update
is one conditional UPDATE plus one history INSERT inside a single
transaction, so current_radius, last_radius_expand and radius_history can
never drift apart, and the WHERE clause enforces ACTIVE-only, never-shrink
semantics at the database. When the caller passes the last-expansion instant
it read, the same WHERE clause rejects a write over a newer change.

SQLite (used in tests) drops tzinfo on round-trip; every datetime read back
is normalised to UTC.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.errors import NotFoundError, ReportStateError
from backend.app.reports.models import (
    AbuseReport,
    AbuseStatus,
    AuditAction,
    AuditEntityType,
    AuditLogEntry,
    Comment,
    ExpandedBy,
    Notification,
    NotificationType,
    PreferredChannels,
    RadiusHistoryEntry,
    Report,
    ReportStatus,
    User,
    UserRef,
    UserRole,
    VerificationStatus,
)
from backend.app.reports.orm import (
    AbuseReportRow,
    AuditLogRow,
    CommentRow,
    JobLeaseRow,
    NotificationRow,
    RadiusHistoryRow,
    ReportRow,
    UserRow,
)
from backend.app.reports.store import (
    AbuseReportStore,
    AuditLog,
    CommentStore,
    CycleLease,
    NotificationStore,
    ReportStore,
    UserDirectory,
    apply_radius_expansion,
    apply_status_change,
    apply_verification,
    check_expected_expand,
)

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Row ↔ dataclass mapping
# ═══════════════════════════════════════════════════════════════════════════

def _report_from_row(row: ReportRow) -> Report:
    return Report(
        id=row.id,
        title=row.title,
        description=row.description,
        category=row.category,
        sub_category=row.sub_category,
        priority=row.priority,
        status=ReportStatus(row.status),
        location=row.location,
        city=row.city,
        state=row.state,
        pincode=row.pincode,
        latitude=row.latitude,
        longitude=row.longitude,
        initial_radius=row.initial_radius,
        current_radius=row.current_radius,
        contact_info=row.contact_info,
        emergency_contact=row.emergency_contact,
        reward=row.reward,
        last_seen=_utc(row.last_seen),
        age=row.age,
        gender=row.gender,
        clothing=row.clothing,
        special_marks=row.special_marks,
        author_id=row.author_id,
        author_name=row.author_name,
        author_type=row.author_type,
        last_radius_expand=_utc(row.last_radius_expand),
        radius_history=[
            RadiusHistoryEntry(
                radius=h.radius,
                expanded_at=_utc(h.expanded_at),
                expanded_by=ExpandedBy(h.expanded_by),
                reason=h.reason,
            )
            for h in row.history
        ],
        resolved_at=_utc(row.resolved_at),
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


def _report_to_row(report: Report) -> ReportRow:
    row = ReportRow(
        id=report.id,
        title=report.title,
        description=report.description,
        category=report.category,
        sub_category=report.sub_category,
        priority=report.priority,
        status=report.status.value,
        location=report.location,
        city=report.city,
        state=report.state,
        pincode=report.pincode,
        latitude=report.latitude,
        longitude=report.longitude,
        initial_radius=report.initial_radius,
        current_radius=report.current_radius,
        contact_info=report.contact_info,
        emergency_contact=report.emergency_contact,
        reward=report.reward,
        last_seen=report.last_seen,
        age=report.age,
        gender=report.gender,
        clothing=report.clothing,
        special_marks=report.special_marks,
        author_id=report.author_id,
        author_name=report.author_name,
        author_type=report.author_type,
        last_radius_expand=report.last_radius_expand,
        resolved_at=report.resolved_at,
        created_at=report.created_at,
        updated_at=report.updated_at,
    )
    row.history = [
        RadiusHistoryRow(
            radius=e.radius,
            expanded_at=e.expanded_at,
            expanded_by=e.expanded_by.value,
            reason=e.reason,
        )
        for e in report.radius_history
    ]
    return row


def _user_from_row(row: UserRow) -> User:
    return User(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        phone=row.phone,
        user_type=UserRole(row.user_type),
        is_verified=row.is_verified,
        verification_status=VerificationStatus(row.verification_status),
        verification_notes=row.verification_notes,
        preferred_channels=PreferredChannels(
            sms=row.prefers_sms, email=row.prefers_email, push=row.prefers_push,
        ),
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


def _notification_from_row(row: NotificationRow) -> Notification:
    return Notification(
        id=row.id,
        type=NotificationType(row.type),
        title=row.title,
        message=row.message,
        user_id=row.user_id,
        report_id=row.report_id,
        is_read=row.is_read,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


def _comment_from_row(row: CommentRow) -> Comment:
    return Comment(
        id=row.id,
        report_id=row.report_id,
        author_id=row.author_id,
        content=row.content,
        location=row.location,
        latitude=row.latitude,
        longitude=row.longitude,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


def _abuse_from_row(row: AbuseReportRow) -> AbuseReport:
    return AbuseReport(
        id=row.id,
        report_id=row.report_id,
        reporter_id=row.reporter_id,
        reason=row.reason,
        details=row.details,
        status=AbuseStatus(row.status),
        created_at=_utc(row.created_at),
        reviewed_at=_utc(row.reviewed_at),
        reviewed_by=row.reviewed_by,
        resolution_notes=row.resolution_notes,
    )


def _audit_from_row(row: AuditLogRow) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        actor_id=row.actor_id,
        action=AuditAction(row.action),
        entity_type=AuditEntityType(row.entity_type),
        entity_id=row.entity_id,
        metadata=dict(row.meta or {}),
        created_at=_utc(row.created_at),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Stores
# ═══════════════════════════════════════════════════════════════════════════

class SqlReportStore(ReportStore):

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def insert_report(self, report: Report) -> Report:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(_report_to_row(report))
        return report

    async def find_report_by_id(self, report_id: str) -> Optional[Report]:
        async with self._session_factory() as session:
            row = await session.get(ReportRow, report_id)
            return _report_from_row(row) if row else None

    async def find_active_reports(self) -> List[Report]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ReportRow).where(ReportRow.status == ReportStatus.ACTIVE.value)
            )
            return [_report_from_row(row) for row in result.scalars().all()]

    async def update_report_radius(
        self,
        report_id: str,
        new_radius: float,
        now: datetime,
        *,
        expanded_by: ExpandedBy = ExpandedBy.SYSTEM,
        reason: Optional[str] = None,
        expected_last_expand: Optional[datetime] = None,
    ) -> Report:
        conditions = [
            ReportRow.id == report_id,
            ReportRow.status == ReportStatus.ACTIVE.value,
            ReportRow.current_radius <= new_radius,
        ]
        if expected_last_expand is not None:
            conditions.append(ReportRow.last_radius_expand == expected_last_expand)

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(ReportRow)
                    .where(*conditions)
                    .values(
                        current_radius=new_radius,
                        last_radius_expand=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    row = await session.get(ReportRow, report_id)
                    if row is None:
                        raise NotFoundError("Report", report_id=report_id)
                    # Re-run the rules on the current row to raise the precise error
                    current = _report_from_row(row)
                    check_expected_expand(current, expected_last_expand)
                    apply_radius_expansion(current, new_radius, now, expanded_by, reason)
                    raise ReportStateError(report_id, "Concurrent radius update")
                session.add(
                    RadiusHistoryRow(
                        report_id=report_id,
                        radius=new_radius,
                        expanded_at=now,
                        expanded_by=expanded_by.value,
                        reason=reason,
                    )
                )

        updated = await self.find_report_by_id(report_id)
        if updated is None:
            raise NotFoundError("Report", report_id=report_id)
        return updated

    async def update_report_status(
        self, report_id: str, status: ReportStatus, now: datetime,
    ) -> Report:
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(ReportRow, report_id, with_for_update=True)
                if row is None:
                    raise NotFoundError("Report", report_id=report_id)
                report = _report_from_row(row)
                apply_status_change(report, status, now)
                row.status = report.status.value
                row.resolved_at = report.resolved_at
                row.updated_at = report.updated_at
            return _report_from_row(row)


class SqlUserDirectory(UserDirectory):

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def insert_user(self, user: User) -> User:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(UserRow(
                    id=user.id,
                    email=user.email,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    phone=user.phone,
                    user_type=user.user_type.value,
                    is_verified=user.is_verified,
                    verification_status=user.verification_status.value,
                    verification_notes=user.verification_notes,
                    prefers_sms=user.preferred_channels.sms,
                    prefers_email=user.preferred_channels.email,
                    prefers_push=user.preferred_channels.push,
                    created_at=user.created_at,
                    updated_at=user.updated_at,
                ))
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._session_factory() as session:
            row = await session.get(UserRow, user_id)
            return _user_from_row(row) if row else None

    async def _find_eligible(self, roles: Optional[List[str]] = None) -> List[UserRef]:
        query = select(UserRow).where(
            UserRow.is_verified.is_(True),
            UserRow.verification_status == VerificationStatus.APPROVED.value,
        )
        if roles is not None:
            query = query.where(UserRow.user_type.in_(roles))
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [_user_from_row(row).to_ref() for row in result.scalars().all()]

    async def find_verified_approved_users(self) -> List[UserRef]:
        return await self._find_eligible()

    async def find_verified_approved_users_by_role(
        self, roles: Iterable[UserRole],
    ) -> List[UserRef]:
        return await self._find_eligible([r.value for r in roles])

    async def update_verification(
        self,
        user_id: str,
        status: VerificationStatus,
        notes: Optional[str],
        now: datetime,
    ) -> User:
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(UserRow, user_id, with_for_update=True)
                if row is None:
                    raise NotFoundError("User", user_id=user_id)
                user = _user_from_row(row)
                apply_verification(user, status, notes, now)
                row.verification_status = user.verification_status.value
                row.verification_notes = user.verification_notes
                row.is_verified = user.is_verified
                row.updated_at = user.updated_at
            return _user_from_row(row)


class SqlNotificationStore(NotificationStore):

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def insert_notification(self, notification: Notification) -> str:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(NotificationRow(
                    id=notification.id,
                    type=notification.type.value,
                    title=notification.title,
                    message=notification.message,
                    user_id=notification.user_id,
                    report_id=notification.report_id,
                    is_read=notification.is_read,
                    created_at=notification.created_at,
                    updated_at=notification.updated_at,
                ))
        return notification.id

    async def find_notifications_for_user(self, user_id: str) -> List[Notification]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(NotificationRow)
                .where(NotificationRow.user_id == user_id)
                .order_by(NotificationRow.created_at.desc())
            )
            return [_notification_from_row(row) for row in result.scalars().all()]


class SqlCommentStore(CommentStore):

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def insert_comment(self, comment: Comment) -> Comment:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(CommentRow(
                    id=comment.id,
                    report_id=comment.report_id,
                    author_id=comment.author_id,
                    content=comment.content,
                    location=comment.location,
                    latitude=comment.latitude,
                    longitude=comment.longitude,
                    created_at=comment.created_at,
                    updated_at=comment.updated_at,
                ))
        return comment

    async def find_comments_for_report(self, report_id: str) -> List[Comment]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CommentRow)
                .where(CommentRow.report_id == report_id)
                .order_by(CommentRow.created_at.desc())
            )
            return [_comment_from_row(row) for row in result.scalars().all()]


class SqlAbuseReportStore(AbuseReportStore):

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def insert_abuse_report(self, abuse: AbuseReport) -> AbuseReport:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(AbuseReportRow(
                    id=abuse.id,
                    report_id=abuse.report_id,
                    reporter_id=abuse.reporter_id,
                    reason=abuse.reason,
                    details=abuse.details,
                    status=abuse.status.value,
                    created_at=abuse.created_at,
                    reviewed_at=abuse.reviewed_at,
                    reviewed_by=abuse.reviewed_by,
                    resolution_notes=abuse.resolution_notes,
                ))
        return abuse

    async def find_abuse_reports_for_report(self, report_id: str) -> List[AbuseReport]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AbuseReportRow)
                .where(AbuseReportRow.report_id == report_id)
                .order_by(AbuseReportRow.created_at)
            )
            return [_abuse_from_row(row) for row in result.scalars().all()]


class SqlAuditLog(AuditLog):

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(AuditLogRow(
                    id=entry.id,
                    actor_id=entry.actor_id,
                    action=entry.action.value,
                    entity_type=entry.entity_type.value,
                    entity_id=entry.entity_id,
                    meta=dict(entry.metadata),
                    created_at=entry.created_at,
                ))
        return entry

    async def find_entries(
        self,
        entity_type: Optional[AuditEntityType] = None,
        entity_id: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        query = select(AuditLogRow)
        if entity_type is not None:
            query = query.where(AuditLogRow.entity_type == entity_type.value)
        if entity_id is not None:
            query = query.where(AuditLogRow.entity_id == entity_id)
        async with self._session_factory() as session:
            result = await session.execute(query.order_by(AuditLogRow.created_at.desc()))
            return [_audit_from_row(row) for row in result.scalars().all()]


class SqlCycleLease(CycleLease):
    """
    Single-row compare-and-swap lease in job_leases.

    A replica takes the lease when the row is missing, already its own, or
    expired. Losing an INSERT race surfaces as IntegrityError and counts as
    not acquired.
    """

    def __init__(self, session_factory: SessionFactory, name: str = "radius_expansion"):
        self._session_factory = session_factory
        self._name = name

    async def try_acquire(self, owner: str, now: datetime, ttl: timedelta) -> bool:
        expires_at = now + ttl
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(JobLeaseRow)
                        .where(
                            JobLeaseRow.name == self._name,
                            or_(JobLeaseRow.owner == owner, JobLeaseRow.expires_at <= now),
                        )
                        .values(owner=owner, expires_at=expires_at)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount:
                        return True
                    if await session.get(JobLeaseRow, self._name) is not None:
                        return False
                    session.add(JobLeaseRow(name=self._name, owner=owner, expires_at=expires_at))
        except IntegrityError:
            logger.info("Lease %s claimed concurrently by another replica", self._name)
            return False
        return True

    async def release(self, owner: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(JobLeaseRow, self._name)
                if row is not None and row.owner == owner:
                    await session.delete(row)
