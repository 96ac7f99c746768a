"""
dispatcher.py — Notification fan-out: audience → persist → deliver.

═══════════════════════════════════════════════════════════════════════════
FAN-OUT FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Audience        │  UserDirectory query for the notification type
    └─────────┬───────────┘
              │   for each recipient, independently:
              ▼
    ┌─────────────────────┐
    │  2. Persist         │  NotificationStore.insert_notification
    └─────────┬───────────┘  (a failure here skips delivery for this user only)
              │
              ▼
    ┌─────────────────────┐
    │  3. Deliver         │  SMS → email → push, each best-effort:
    │                     │  preferred + reachable + channel enabled
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. Summary         │  DispatchSummary for logs / tests
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
AUDIENCES
═══════════════════════════════════════════════════════════════════════════

    Type                 Audience
    ───────────────────  ────────────────────────────────────────────────
    REPORT_CREATED       verified + APPROVED, role ∈ RESPONDER_ROLES
    RADIUS_EXPANDED      verified + APPROVED, any role, any location
    NEW_COMMENT          the report author (not when they commented)
    REPORT_RESOLVED      responder audience ∪ report author
    VERIFICATION_STATUS  the reviewed user

The persisted record is the durable artifact; delivery is never retried and
never rolls back persistence. There is no rollback across recipients either.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from backend.app.notifications.channels.base import (
    ChannelSet,
    DeliveryAttempt,
    DeliveryChannel,
    DeliveryStatus,
)
from backend.app.reports.models import (
    RESPONDER_ROLES,
    Comment,
    Notification,
    NotificationType,
    Report,
    User,
    UserRef,
    VerificationStatus,
    format_km,
)
from backend.app.reports.store import NotificationStore, UserDirectory

logger = logging.getLogger(__name__)


@dataclass
class DispatchSummary:
    """Aggregate outcome of one fan-out."""
    type: NotificationType
    report_id: Optional[str]
    audience_size: int = 0
    persisted: int = 0
    failed_recipients: List[str] = field(default_factory=list)
    deliveries: List[DeliveryAttempt] = field(default_factory=list)

    def count(self, status: DeliveryStatus) -> int:
        return sum(1 for d in self.deliveries if d.status == status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "report_id": self.report_id,
            "audience_size": self.audience_size,
            "persisted": self.persisted,
            "failed_recipients": list(self.failed_recipients),
            "delivered": self.count(DeliveryStatus.DELIVERED),
            "delivery_failures": self.count(DeliveryStatus.FAILED),
        }


class NotificationDispatcher:
    """
    Persist and deliver notifications for report lifecycle events.

    Parameters
    ----------
    users : UserDirectory
        Source of every audience.
    notifications : NotificationStore
        Durable per-recipient records.
    channels : ChannelSet | None
        Delivery backends; all-null when omitted.
    """

    def __init__(
        self,
        users: UserDirectory,
        notifications: NotificationStore,
        channels: Optional[ChannelSet] = None,
    ):
        self._users = users
        self._notifications = notifications
        self._channels = channels or ChannelSet()

    @property
    def channels(self) -> ChannelSet:
        return self._channels

    # ═══════════════════════════════════════════════════════════════════
    # Public fan-outs
    # ═══════════════════════════════════════════════════════════════════

    async def notify_radius_expansion(self, report: Report, new_radius: float) -> DispatchSummary:
        """Tell every verified, approved user that a report's radius widened."""
        # Geography is not consulted: the whole verified population is notified.
        audience = await self._users.find_verified_approved_users()
        return await self._fan_out(
            NotificationType.RADIUS_EXPANDED,
            report.id,
            audience,
            title="Search Radius Expanded",
            message=f'Search radius for "{report.title}" expanded to {format_km(new_radius)} km',
        )

    async def notify_report_created(self, report: Report) -> DispatchSummary:
        audience = await self._users.find_verified_approved_users_by_role(RESPONDER_ROLES)
        return await self._fan_out(
            NotificationType.REPORT_CREATED,
            report.id,
            audience,
            title=f"New {report.category} report",
            message=f"{report.title} ({report.location or 'location not given'})",
        )

    async def notify_new_comment(self, report: Report, comment: Comment) -> DispatchSummary:
        audience: List[UserRef] = []
        if comment.author_id != report.author_id:
            author = await self._users.get_user(report.author_id)
            if author is not None:
                audience.append(author.to_ref())
            else:
                logger.info(
                    "Report %s author %s not in directory; comment notice dropped",
                    report.id, report.author_id,
                    extra={"report_id": report.id},
                )
        return await self._fan_out(
            NotificationType.NEW_COMMENT,
            report.id,
            audience,
            title="New comment on your report",
            message=f'New comment on "{report.title}": {comment.content[:120]}',
        )

    async def notify_report_resolved(self, report: Report) -> DispatchSummary:
        audience = await self._users.find_verified_approved_users_by_role(RESPONDER_ROLES)
        if all(ref.id != report.author_id for ref in audience):
            author = await self._users.get_user(report.author_id)
            if author is not None:
                audience.append(author.to_ref())
        return await self._fan_out(
            NotificationType.REPORT_RESOLVED,
            report.id,
            audience,
            title="Report Resolved",
            message=f'"{report.title}" has been marked as resolved',
        )

    async def notify_verification_status(self, user: User) -> DispatchSummary:
        if user.verification_status == VerificationStatus.APPROVED:
            message = "Your account has been verified. You will now receive safety alerts."
        else:
            message = f"Your verification request was {user.verification_status.value.lower()}."
            if user.verification_notes:
                message += f" Notes: {user.verification_notes}"
        return await self._fan_out(
            NotificationType.VERIFICATION_STATUS,
            None,
            [user.to_ref()],
            title="Verification Status Updated",
            message=message,
        )

    # ═══════════════════════════════════════════════════════════════════
    # Persist-then-deliver for one notification
    # ═══════════════════════════════════════════════════════════════════

    async def save_notification(
        self,
        notification: Notification,
        recipient: Optional[UserRef] = None,
    ) -> List[DeliveryAttempt]:
        """
        Persist a notification, then deliver it over the recipient's channels.

        Persistence errors propagate. Delivery errors never do; each channel
        outcome is returned as a DeliveryAttempt.
        """
        await self._notifications.insert_notification(notification)

        if recipient is None:
            user = await self._users.get_user(notification.user_id)
            if user is None:
                logger.warning(
                    "Notification %s persisted but user %s is unknown; not delivered",
                    notification.id, notification.user_id,
                    extra={"user_id": notification.user_id},
                )
                return []
            recipient = user.to_ref()

        return await self._deliver(notification, recipient)

    async def _deliver(
        self, notification: Notification, recipient: UserRef,
    ) -> List[DeliveryAttempt]:
        prefs = recipient.preferred_channels
        channels = self._channels
        data = {
            "notification_id": notification.id,
            "type": notification.type.value,
            "report_id": notification.report_id,
        }

        attempts = [
            await self._attempt(
                DeliveryChannel.SMS, notification, recipient,
                reachable=prefs.sms and bool(recipient.phone) and channels.sms.enabled,
                send=lambda: channels.sms.send(
                    recipient.phone, f"{notification.title}: {notification.message}",
                ),
            ),
            await self._attempt(
                DeliveryChannel.EMAIL, notification, recipient,
                reachable=prefs.email and bool(recipient.email) and channels.email.enabled,
                send=lambda: channels.email.send(
                    recipient.email, notification.title, notification.message,
                ),
            ),
            await self._attempt(
                DeliveryChannel.PUSH, notification, recipient,
                reachable=prefs.push and channels.push.enabled,
                send=lambda: channels.push.send(
                    recipient.id, notification.title, notification.message, data,
                ),
            ),
        ]
        return attempts

    async def _attempt(
        self,
        channel: DeliveryChannel,
        notification: Notification,
        recipient: UserRef,
        *,
        reachable: bool,
        send: Callable[[], Awaitable[None]],
    ) -> DeliveryAttempt:
        attempt = DeliveryAttempt(
            channel=channel,
            user_id=recipient.id,
            notification_id=notification.id,
            status=DeliveryStatus.SKIPPED,
        )
        if not reachable:
            return attempt

        try:
            await send()
            attempt.status = DeliveryStatus.DELIVERED
        except Exception as exc:
            attempt.status = DeliveryStatus.FAILED
            attempt.error_message = str(exc)
            logger.warning(
                "%s delivery failed for user %s (notification %s): %s",
                channel.value, recipient.id, notification.id, exc,
                extra={
                    "user_id": recipient.id,
                    "channel": channel.value,
                    "notification_type": notification.type.value,
                },
            )
        return attempt

    # ═══════════════════════════════════════════════════════════════════
    # Fan-out loop
    # ═══════════════════════════════════════════════════════════════════

    async def _fan_out(
        self,
        type_: NotificationType,
        report_id: Optional[str],
        audience: List[UserRef],
        *,
        title: str,
        message: str,
    ) -> DispatchSummary:
        started = time.perf_counter()
        summary = DispatchSummary(type=type_, report_id=report_id, audience_size=len(audience))

        for recipient in audience:
            notification = Notification(
                type=type_,
                title=title,
                message=message,
                user_id=recipient.id,
                report_id=report_id,
            )
            try:
                summary.deliveries.extend(
                    await self.save_notification(notification, recipient)
                )
                summary.persisted += 1
            except Exception:
                summary.failed_recipients.append(recipient.id)
                logger.exception(
                    "Failed to notify user %s (%s, report %s)",
                    recipient.id, type_.value, report_id,
                    extra={"user_id": recipient.id, "report_id": report_id},
                )

        logger.info(
            "%s fan-out: %d/%d persisted, %d delivered, %d delivery failures",
            type_.value, summary.persisted, summary.audience_size,
            summary.count(DeliveryStatus.DELIVERED),
            summary.count(DeliveryStatus.FAILED),
            extra={
                "report_id": report_id,
                "notification_type": type_.value,
                "recipient_count": summary.audience_size,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return summary
