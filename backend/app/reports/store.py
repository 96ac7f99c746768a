"""
store.py — Store interfaces and their in-memory implementations.

The scheduler and the HTTP layer share these stores. Every mutation is a
single-document read-modify-write; no multi-document transactions are needed
because each report's expansion is independent.

In-memory stores copy records on the way in and out, so callers can only
change stored state through the store methods. Mutations contain no awaits,
which makes each of them atomic under the event loop.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from backend.app.core.errors import NotFoundError, ReportStateError, StaleReportError
from backend.app.reports.models import (
    AbuseReport,
    AuditEntityType,
    AuditLogEntry,
    Comment,
    ExpandedBy,
    Notification,
    RadiusHistoryEntry,
    Report,
    ReportStatus,
    User,
    UserRef,
    UserRole,
    VerificationStatus,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Interfaces
# ═══════════════════════════════════════════════════════════════════════════

class ReportStore(ABC):

    @abstractmethod
    async def insert_report(self, report: Report) -> Report: ...

    @abstractmethod
    async def find_report_by_id(self, report_id: str) -> Optional[Report]: ...

    @abstractmethod
    async def find_active_reports(self) -> List[Report]: ...

    @abstractmethod
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
        """
        Widen the radius and append the matching history entry atomically.

        Raises NotFoundError for an unknown id and ReportStateError when the
        report is not ACTIVE or new_radius is below the current radius.
        With expected_last_expand set, raises StaleReportError (checked
        first) when the report's last expansion is no longer that instant.
        """

    @abstractmethod
    async def update_report_status(
        self, report_id: str, status: ReportStatus, now: datetime,
    ) -> Report: ...


class UserDirectory(ABC):

    @abstractmethod
    async def insert_user(self, user: User) -> User: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def find_verified_approved_users(self) -> List[UserRef]: ...

    @abstractmethod
    async def find_verified_approved_users_by_role(
        self, roles: Iterable[UserRole],
    ) -> List[UserRef]: ...

    @abstractmethod
    async def update_verification(
        self,
        user_id: str,
        status: VerificationStatus,
        notes: Optional[str],
        now: datetime,
    ) -> User: ...


class NotificationStore(ABC):

    @abstractmethod
    async def insert_notification(self, notification: Notification) -> str: ...

    @abstractmethod
    async def find_notifications_for_user(self, user_id: str) -> List[Notification]: ...


class CommentStore(ABC):

    @abstractmethod
    async def insert_comment(self, comment: Comment) -> Comment: ...

    @abstractmethod
    async def find_comments_for_report(self, report_id: str) -> List[Comment]:
        """Comments on one report, newest first."""


class AbuseReportStore(ABC):

    @abstractmethod
    async def insert_abuse_report(self, abuse: AbuseReport) -> AbuseReport: ...

    @abstractmethod
    async def find_abuse_reports_for_report(self, report_id: str) -> List[AbuseReport]: ...


class AuditLog(ABC):
    """Append-only; entries are never updated or removed."""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> AuditLogEntry: ...

    @abstractmethod
    async def find_entries(
        self,
        entity_type: Optional[AuditEntityType] = None,
        entity_id: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        """Entries matching the filters, newest first."""


class CycleLease(ABC):
    """Cross-replica claim on the right to run a cycle, with an expiry."""

    @abstractmethod
    async def try_acquire(self, owner: str, now: datetime, ttl: timedelta) -> bool: ...

    @abstractmethod
    async def release(self, owner: str) -> None: ...


# ═══════════════════════════════════════════════════════════════════════════
# Shared mutation rules
# ═══════════════════════════════════════════════════════════════════════════

def check_expected_expand(report: Report, expected: Optional[datetime]) -> None:
    if expected is not None and report.last_expanded_at != expected:
        raise StaleReportError(
            report.id,
            expected_last_expand=expected.isoformat(),
            last_expand=report.last_expanded_at.isoformat(),
        )


def apply_radius_expansion(
    report: Report,
    new_radius: float,
    now: datetime,
    expanded_by: ExpandedBy,
    reason: Optional[str],
) -> None:
    """Mutate report in place; raises ReportStateError on a forbidden change."""
    if report.status != ReportStatus.ACTIVE:
        raise ReportStateError(
            report.id,
            f"Report is {report.status.value}; only ACTIVE reports expand",
            status=report.status.value,
        )
    if new_radius < report.current_radius:
        raise ReportStateError(
            report.id,
            "Radius cannot shrink",
            current_radius=report.current_radius,
            requested_radius=new_radius,
        )
    report.current_radius = new_radius
    report.last_radius_expand = now
    report.updated_at = now
    report.radius_history.append(
        RadiusHistoryEntry(
            radius=new_radius,
            expanded_at=now,
            expanded_by=expanded_by,
            reason=reason,
        )
    )


def apply_status_change(report: Report, status: ReportStatus, now: datetime) -> None:
    report.status = status
    report.updated_at = now
    if status == ReportStatus.RESOLVED and report.resolved_at is None:
        report.resolved_at = now


def apply_verification(
    user: User, status: VerificationStatus, notes: Optional[str], now: datetime,
) -> None:
    user.verification_status = status
    user.verification_notes = notes
    user.is_verified = status == VerificationStatus.APPROVED
    user.updated_at = now


# ═══════════════════════════════════════════════════════════════════════════
# In-memory implementations
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryReportStore(ReportStore):

    def __init__(self) -> None:
        self._reports: Dict[str, Report] = {}

    async def insert_report(self, report: Report) -> Report:
        self._reports[report.id] = copy.deepcopy(report)
        return copy.deepcopy(report)

    async def find_report_by_id(self, report_id: str) -> Optional[Report]:
        report = self._reports.get(report_id)
        return copy.deepcopy(report) if report else None

    async def find_active_reports(self) -> List[Report]:
        return [
            copy.deepcopy(r) for r in self._reports.values()
            if r.status == ReportStatus.ACTIVE
        ]

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
        stored = self._reports.get(report_id)
        if stored is None:
            raise NotFoundError("Report", report_id=report_id)
        check_expected_expand(stored, expected_last_expand)
        # Work on a copy so a rejected change leaves the stored record intact
        updated = copy.deepcopy(stored)
        apply_radius_expansion(updated, new_radius, now, expanded_by, reason)
        self._reports[report_id] = updated
        return copy.deepcopy(updated)

    async def update_report_status(
        self, report_id: str, status: ReportStatus, now: datetime,
    ) -> Report:
        stored = self._reports.get(report_id)
        if stored is None:
            raise NotFoundError("Report", report_id=report_id)
        apply_status_change(stored, status, now)
        return copy.deepcopy(stored)


class InMemoryUserDirectory(UserDirectory):

    def __init__(self, users: Iterable[User] = ()) -> None:
        self._users: Dict[str, User] = {u.id: copy.deepcopy(u) for u in users}

    async def insert_user(self, user: User) -> User:
        self._users[user.id] = copy.deepcopy(user)
        return copy.deepcopy(user)

    async def get_user(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return copy.deepcopy(user) if user else None

    async def find_verified_approved_users(self) -> List[UserRef]:
        return [u.to_ref() for u in self._users.values() if u.is_responder_eligible]

    async def find_verified_approved_users_by_role(
        self, roles: Iterable[UserRole],
    ) -> List[UserRef]:
        wanted = set(roles)
        return [
            u.to_ref() for u in self._users.values()
            if u.is_responder_eligible and u.user_type in wanted
        ]

    async def update_verification(
        self,
        user_id: str,
        status: VerificationStatus,
        notes: Optional[str],
        now: datetime,
    ) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError("User", user_id=user_id)
        apply_verification(user, status, notes, now)
        return copy.deepcopy(user)


class InMemoryNotificationStore(NotificationStore):

    def __init__(self) -> None:
        self._notifications: List[Notification] = []

    @property
    def notifications(self) -> List[Notification]:
        return [copy.deepcopy(n) for n in self._notifications]

    async def insert_notification(self, notification: Notification) -> str:
        self._notifications.append(copy.deepcopy(notification))
        return notification.id

    async def find_notifications_for_user(self, user_id: str) -> List[Notification]:
        return [copy.deepcopy(n) for n in self._notifications if n.user_id == user_id]


class InMemoryCommentStore(CommentStore):

    def __init__(self) -> None:
        self._comments: Dict[str, Comment] = {}

    async def insert_comment(self, comment: Comment) -> Comment:
        self._comments[comment.id] = copy.deepcopy(comment)
        return copy.deepcopy(comment)

    async def find_comments_for_report(self, report_id: str) -> List[Comment]:
        found = [c for c in self._comments.values() if c.report_id == report_id]
        found.sort(key=lambda c: c.created_at, reverse=True)
        return [copy.deepcopy(c) for c in found]


class InMemoryAbuseReportStore(AbuseReportStore):

    def __init__(self) -> None:
        self._abuse: List[AbuseReport] = []

    async def insert_abuse_report(self, abuse: AbuseReport) -> AbuseReport:
        self._abuse.append(copy.deepcopy(abuse))
        return copy.deepcopy(abuse)

    async def find_abuse_reports_for_report(self, report_id: str) -> List[AbuseReport]:
        return [copy.deepcopy(a) for a in self._abuse if a.report_id == report_id]


class InMemoryAuditLog(AuditLog):

    def __init__(self) -> None:
        self._entries: List[AuditLogEntry] = []

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        self._entries.append(copy.deepcopy(entry))
        return copy.deepcopy(entry)

    async def find_entries(
        self,
        entity_type: Optional[AuditEntityType] = None,
        entity_id: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        found = [
            e for e in self._entries
            if (entity_type is None or e.entity_type == entity_type)
            and (entity_id is None or e.entity_id == entity_id)
        ]
        found.sort(key=lambda e: e.created_at, reverse=True)
        return [copy.deepcopy(e) for e in found]


class InMemoryCycleLease(CycleLease):
    """Process-local lease; only useful for tests and single-process dev."""

    def __init__(self) -> None:
        self._owner: Optional[str] = None
        self._expires_at: Optional[datetime] = None

    async def try_acquire(self, owner: str, now: datetime, ttl: timedelta) -> bool:
        if self._owner not in (None, owner) and self._expires_at and self._expires_at > now:
            return False
        self._owner = owner
        self._expires_at = now + ttl
        return True

    async def release(self, owner: str) -> None:
        if self._owner == owner:
            self._owner = None
            self._expires_at = None
