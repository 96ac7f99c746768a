"""
test_notification_dispatcher.py — Tests for notification fan-out.

Covers:
    • Audience selection per notification type
    • Persist-before-deliver and channel degradation
    • Per-channel and per-recipient failure isolation
    • Channel preference flags and contact availability
    • DispatchSummary accounting

Run with:
    pytest tests/test_notification_dispatcher.py -v
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from backend.app.core.errors import ChannelDeliveryError
from backend.app.notifications.channels.base import (
    ChannelSet,
    DeliveryChannel,
    DeliveryStatus,
    EmailSender,
    PushSender,
    SmsSender,
)
from backend.app.notifications.dispatcher import DispatchSummary, NotificationDispatcher
from backend.app.reports.models import (
    Comment,
    Notification,
    NotificationType,
    PreferredChannels,
    Report,
    User,
    UserRole,
    VerificationStatus,
)
from backend.app.reports.store import InMemoryNotificationStore, InMemoryUserDirectory


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

def _make_user(
    uid: str,
    role: UserRole = UserRole.POLICE,
    verified: bool = True,
    status: VerificationStatus = VerificationStatus.APPROVED,
    phone: Optional[str] = "+919876543210",
    email: Optional[str] = "user@example.com",
    prefs: Optional[PreferredChannels] = None,
) -> User:
    return User(
        id=uid,
        email=email,
        first_name=uid,
        phone=phone,
        user_type=role,
        is_verified=verified,
        verification_status=status,
        preferred_channels=prefs or PreferredChannels(),
    )


def _make_report(author_id: str = "author", title: str = "Missing: Ravi, 9") -> Report:
    return Report(
        id="rep-1",
        title=title,
        description="Wearing a blue school uniform",
        category="MISSING_PERSON",
        latitude=13.0827,
        longitude=80.2707,
        initial_radius=5.0,
        current_radius=5.0,
        author_id=author_id,
        location="Adyar, Chennai",
    )


class _RecordingSms(SmsSender):
    def __init__(self, fail_for: Tuple[str, ...] = ()):
        self.sent: List[Tuple[str, str]] = []
        self.fail_for = fail_for

    async def send(self, phone: str, body: str) -> None:
        if phone in self.fail_for:
            raise ChannelDeliveryError("sms", "carrier rejected")
        self.sent.append((phone, body))


class _RecordingEmail(EmailSender):
    def __init__(self, fail: bool = False):
        self.sent: List[Tuple[str, str, str]] = []
        self.fail = fail

    async def send(self, address: str, subject: str, body: str) -> None:
        if self.fail:
            raise ChannelDeliveryError("email", "SMTP 451")
        self.sent.append((address, subject, body))


class _RecordingPush(PushSender):
    def __init__(self):
        self.sent: List[Tuple[str, str, str, Dict[str, Any]]] = []

    async def send(self, user_id: str, title: str, body: str, data: Dict[str, Any]) -> None:
        self.sent.append((user_id, title, body, data))


class _FlakyNotificationStore(InMemoryNotificationStore):
    """Fails the insert for selected users."""

    def __init__(self, failing_users):
        super().__init__()
        self.failing_users = set(failing_users)

    async def insert_notification(self, notification: Notification) -> str:
        if notification.user_id in self.failing_users:
            raise ConnectionError("insert failed")
        return await super().insert_notification(notification)


def _dispatcher(users: List[User], channels: Optional[ChannelSet] = None, store=None):
    store = store or InMemoryNotificationStore()
    return NotificationDispatcher(InMemoryUserDirectory(users), store, channels), store


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Audiences
# ═══════════════════════════════════════════════════════════════════════════

class TestRadiusExpansionAudience:

    def test_only_verified_approved_users_any_role(self):
        users = [
            _make_user("u1", role=UserRole.CITIZEN),
            _make_user("u2", role=UserRole.TEACHER),
            _make_user("u3", role=UserRole.POLICE),
            _make_user("u4", verified=False, status=VerificationStatus.PENDING),
            _make_user("u5", verified=True, status=VerificationStatus.REJECTED),
        ]
        dispatcher, store = _dispatcher(users)
        summary = asyncio.run(dispatcher.notify_radius_expansion(_make_report(), 10.0))

        assert summary.audience_size == 3
        assert summary.persisted == 3
        assert {n.user_id for n in store.notifications} == {"u1", "u2", "u3"}

    def test_content(self):
        dispatcher, store = _dispatcher([_make_user("u1")])
        asyncio.run(dispatcher.notify_radius_expansion(_make_report(title="Lost dog"), 15.0))

        (n,) = store.notifications
        assert n.type == NotificationType.RADIUS_EXPANDED
        assert n.title == "Search Radius Expanded"
        assert n.message == 'Search radius for "Lost dog" expanded to 15 km'
        assert n.report_id == "rep-1"
        assert n.is_read is False

    def test_fractional_radius_formatting(self):
        dispatcher, store = _dispatcher([_make_user("u1")])
        asyncio.run(dispatcher.notify_radius_expansion(_make_report(title="X"), 7.5))
        assert store.notifications[0].message.endswith("expanded to 7.5 km")

    def test_empty_audience(self):
        dispatcher, store = _dispatcher([_make_user("u1", verified=False)])
        summary = asyncio.run(dispatcher.notify_radius_expansion(_make_report(), 10.0))
        assert summary.audience_size == 0
        assert store.notifications == []


class TestReportCreatedAudience:

    def test_responder_roles_only(self):
        users = [
            _make_user("c1", role=UserRole.CITIZEN),
            _make_user("p1", role=UserRole.POLICE),
            _make_user("c2", role=UserRole.CITIZEN),
            _make_user("n1", role=UserRole.NGO),
        ]
        dispatcher, store = _dispatcher(users)
        asyncio.run(dispatcher.notify_report_created(_make_report()))

        assert sorted(n.user_id for n in store.notifications) == ["n1", "p1"]
        assert all(n.type == NotificationType.REPORT_CREATED for n in store.notifications)

    def test_unverified_responder_excluded(self):
        users = [
            _make_user("p1", role=UserRole.POLICE),
            _make_user("p2", role=UserRole.POLICE, verified=False, status=VerificationStatus.PENDING),
            _make_user("m1", role=UserRole.MEDICAL),
            _make_user("g1", role=UserRole.GOVERNMENT),
            _make_user("s1", role=UserRole.SECURITY),
        ]
        dispatcher, store = _dispatcher(users)
        asyncio.run(dispatcher.notify_report_created(_make_report()))

        assert sorted(n.user_id for n in store.notifications) == ["g1", "m1", "p1"]


class TestSupplementaryAudiences:

    def test_new_comment_goes_to_author(self):
        users = [_make_user("author", role=UserRole.CITIZEN), _make_user("p1")]
        dispatcher, store = _dispatcher(users)
        comment = Comment(report_id="rep-1", author_id="p1", content="Seen near the temple")
        asyncio.run(dispatcher.notify_new_comment(_make_report(), comment))

        (n,) = store.notifications
        assert n.user_id == "author"
        assert n.type == NotificationType.NEW_COMMENT
        assert "Seen near the temple" in n.message

    def test_own_comment_not_notified(self):
        dispatcher, store = _dispatcher([_make_user("author")])
        comment = Comment(report_id="rep-1", author_id="author", content="Update")
        summary = asyncio.run(dispatcher.notify_new_comment(_make_report(), comment))
        assert summary.audience_size == 0
        assert store.notifications == []

    def test_unknown_author_not_notified(self):
        dispatcher, store = _dispatcher([_make_user("p1")])
        comment = Comment(report_id="rep-1", author_id="p1", content="Seen")
        asyncio.run(dispatcher.notify_new_comment(_make_report(author_id="ghost"), comment))
        assert store.notifications == []

    def test_resolved_reaches_responders_and_author_once(self):
        users = [
            _make_user("author", role=UserRole.CITIZEN, verified=False),
            _make_user("p1"),
            _make_user("c1", role=UserRole.CITIZEN),
        ]
        dispatcher, store = _dispatcher(users)
        asyncio.run(dispatcher.notify_report_resolved(_make_report()))
        assert sorted(n.user_id for n in store.notifications) == ["author", "p1"]

    def test_resolved_author_who_is_responder_not_duplicated(self):
        dispatcher, store = _dispatcher([_make_user("author", role=UserRole.POLICE)])
        asyncio.run(dispatcher.notify_report_resolved(_make_report()))
        assert [n.user_id for n in store.notifications] == ["author"]

    def test_verification_status_message(self):
        user = _make_user("u1", verified=False, status=VerificationStatus.REJECTED)
        user.verification_notes = "ID unreadable"
        dispatcher, store = _dispatcher([user])
        asyncio.run(dispatcher.notify_verification_status(user))

        (n,) = store.notifications
        assert n.type == NotificationType.VERIFICATION_STATUS
        assert n.report_id is None
        assert "rejected" in n.message
        assert "ID unreadable" in n.message


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Persist-then-deliver
# ═══════════════════════════════════════════════════════════════════════════

class TestSaveNotification:

    def test_no_providers_still_persists(self):
        user = _make_user("u1", prefs=PreferredChannels(sms=True, email=True, push=True))
        dispatcher, store = _dispatcher([user])
        n = Notification(type=NotificationType.RADIUS_EXPANDED, title="t", message="m", user_id="u1")

        attempts = asyncio.run(dispatcher.save_notification(n, user.to_ref()))

        assert [x.id for x in store.notifications] == [n.id]
        assert all(a.status == DeliveryStatus.SKIPPED for a in attempts)

    def test_looks_up_recipient_when_not_given(self):
        sms = _RecordingSms()
        dispatcher, store = _dispatcher([_make_user("u1", phone="+911111111111")], ChannelSet(sms=sms))
        n = Notification(type=NotificationType.REPORT_CREATED, title="New", message="body", user_id="u1")

        asyncio.run(dispatcher.save_notification(n))

        assert sms.sent == [("+911111111111", "New: body")]
        assert len(store.notifications) == 1

    def test_unknown_user_persisted_not_delivered(self):
        sms = _RecordingSms()
        dispatcher, store = _dispatcher([], ChannelSet(sms=sms))
        n = Notification(type=NotificationType.REPORT_CREATED, title="t", message="m", user_id="ghost")

        attempts = asyncio.run(dispatcher.save_notification(n))

        assert attempts == []
        assert sms.sent == []
        assert len(store.notifications) == 1

    def test_all_channels_delivered(self):
        sms, email, push = _RecordingSms(), _RecordingEmail(), _RecordingPush()
        user = _make_user("u1")
        dispatcher, _ = _dispatcher([user], ChannelSet(sms=sms, email=email, push=push))
        n = Notification(
            type=NotificationType.RADIUS_EXPANDED, title="Search Radius Expanded",
            message="wider", user_id="u1", report_id="rep-1",
        )

        attempts = asyncio.run(dispatcher.save_notification(n, user.to_ref()))

        assert [a.channel for a in attempts] == [
            DeliveryChannel.SMS, DeliveryChannel.EMAIL, DeliveryChannel.PUSH,
        ]
        assert all(a.status == DeliveryStatus.DELIVERED for a in attempts)
        assert email.sent == [("user@example.com", "Search Radius Expanded", "wider")]
        assert push.sent[0][3] == {
            "notification_id": n.id, "type": "RADIUS_EXPANDED", "report_id": "rep-1",
        }

    def test_preferences_respected(self):
        sms, email, push = _RecordingSms(), _RecordingEmail(), _RecordingPush()
        user = _make_user("u1", prefs=PreferredChannels(sms=False, email=True, push=False))
        dispatcher, _ = _dispatcher([user], ChannelSet(sms=sms, email=email, push=push))
        n = Notification(type=NotificationType.REPORT_CREATED, title="t", message="m", user_id="u1")

        asyncio.run(dispatcher.save_notification(n, user.to_ref()))

        assert sms.sent == []
        assert push.sent == []
        assert len(email.sent) == 1

    def test_missing_contact_skips_channel(self):
        sms, email = _RecordingSms(), _RecordingEmail()
        user = _make_user("u1", phone=None)
        dispatcher, _ = _dispatcher([user], ChannelSet(sms=sms, email=email))
        n = Notification(type=NotificationType.REPORT_CREATED, title="t", message="m", user_id="u1")

        attempts = asyncio.run(dispatcher.save_notification(n, user.to_ref()))

        by_channel = {a.channel: a.status for a in attempts}
        assert by_channel[DeliveryChannel.SMS] == DeliveryStatus.SKIPPED
        assert by_channel[DeliveryChannel.EMAIL] == DeliveryStatus.DELIVERED

    def test_channel_failure_isolated(self):
        sms, email, push = _RecordingSms(), _RecordingEmail(fail=True), _RecordingPush()
        user = _make_user("u1")
        dispatcher, store = _dispatcher([user], ChannelSet(sms=sms, email=email, push=push))
        n = Notification(type=NotificationType.REPORT_CREATED, title="t", message="m", user_id="u1")

        attempts = asyncio.run(dispatcher.save_notification(n, user.to_ref()))

        by_channel = {a.channel: a for a in attempts}
        assert by_channel[DeliveryChannel.EMAIL].status == DeliveryStatus.FAILED
        assert "SMTP 451" in by_channel[DeliveryChannel.EMAIL].error_message
        assert by_channel[DeliveryChannel.SMS].status == DeliveryStatus.DELIVERED
        assert by_channel[DeliveryChannel.PUSH].status == DeliveryStatus.DELIVERED
        assert len(store.notifications) == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Per-recipient isolation & summary
# ═══════════════════════════════════════════════════════════════════════════

class TestRecipientIsolation:

    def test_persistence_failure_for_one_user_does_not_stop_fan_out(self):
        users = [_make_user("u1"), _make_user("u2"), _make_user("u3")]
        store = _FlakyNotificationStore({"u2"})
        dispatcher, _ = _dispatcher(users, store=store)

        summary = asyncio.run(dispatcher.notify_radius_expansion(_make_report(), 10.0))

        assert summary.persisted == 2
        assert summary.failed_recipients == ["u2"]
        assert sorted(n.user_id for n in store.notifications) == ["u1", "u3"]

    def test_delivery_failure_for_one_user_does_not_affect_others(self):
        users = [
            _make_user("u1", phone="+910000000001"),
            _make_user("u2", phone="+910000000002"),
        ]
        sms = _RecordingSms(fail_for=("+910000000001",))
        dispatcher, store = _dispatcher(users, ChannelSet(sms=sms))

        summary = asyncio.run(dispatcher.notify_radius_expansion(_make_report(), 10.0))

        assert summary.persisted == 2
        assert summary.count(DeliveryStatus.FAILED) == 1
        assert summary.count(DeliveryStatus.DELIVERED) == 1
        assert [p for p, _ in sms.sent] == ["+910000000002"]


class TestDispatchSummary:

    def test_to_dict(self):
        summary = DispatchSummary(
            type=NotificationType.REPORT_CREATED, report_id="rep-1",
            audience_size=2, persisted=1, failed_recipients=["u2"],
        )
        d = summary.to_dict()
        assert d["type"] == "REPORT_CREATED"
        assert d["failed_recipients"] == ["u2"]
        assert d["delivered"] == 0
