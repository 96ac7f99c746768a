"""
base.py — Channel capability interfaces, null senders and delivery records.

═══════════════════════════════════════════════════════════════════════════
CHANNEL SELECTION
═══════════════════════════════════════════════════════════════════════════

    Channel   Needs on the recipient      Enabled when
    ───────   ────────────────────────    ──────────────────────────────
    SMS       phone, preferred.sms        Twilio SID + token + sender set
    Email     email, preferred.email      SMTP host set
    Push      preferred.push              push gateway URL set

A disabled channel is reported as SKIPPED, never as FAILED.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class DeliveryChannel(str, Enum):
    SMS   = "sms"
    EMAIL = "email"
    PUSH  = "push"


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED    = "failed"
    SKIPPED   = "skipped"     # channel disabled, not preferred or no contact


@dataclass
class DeliveryAttempt:
    """Outcome of one channel send for one notification."""
    channel: DeliveryChannel
    user_id: str
    notification_id: str
    status: DeliveryStatus
    error_message: Optional[str] = None
    attempted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "user_id": self.user_id,
            "notification_id": self.notification_id,
            "status": self.status.value,
            "error_message": self.error_message,
            "attempted_at": self.attempted_at.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Capability interfaces
# ═══════════════════════════════════════════════════════════════════════════

class SmsSender(ABC):
    enabled: bool = True

    @abstractmethod
    async def send(self, phone: str, body: str) -> None: ...

    async def aclose(self) -> None:
        return None


class EmailSender(ABC):
    enabled: bool = True

    @abstractmethod
    async def send(self, address: str, subject: str, body: str) -> None: ...

    async def aclose(self) -> None:
        return None


class PushSender(ABC):
    enabled: bool = True

    @abstractmethod
    async def send(
        self, user_id: str, title: str, body: str, data: Dict[str, Any],
    ) -> None: ...

    async def aclose(self) -> None:
        return None


# ═══════════════════════════════════════════════════════════════════════════
# Null senders
# ═══════════════════════════════════════════════════════════════════════════

class NullSmsSender(SmsSender):
    enabled = False

    async def send(self, phone: str, body: str) -> None:
        return None


class NullEmailSender(EmailSender):
    enabled = False

    async def send(self, address: str, subject: str, body: str) -> None:
        return None


class NullPushSender(PushSender):
    enabled = False

    async def send(
        self, user_id: str, title: str, body: str, data: Dict[str, Any],
    ) -> None:
        return None


@dataclass
class ChannelSet:
    """The three senders the dispatcher delivers through."""
    sms: SmsSender = field(default_factory=NullSmsSender)
    email: EmailSender = field(default_factory=NullEmailSender)
    push: PushSender = field(default_factory=NullPushSender)

    def enabled_channels(self) -> List[DeliveryChannel]:
        enabled = []
        if self.sms.enabled:
            enabled.append(DeliveryChannel.SMS)
        if self.email.enabled:
            enabled.append(DeliveryChannel.EMAIL)
        if self.push.enabled:
            enabled.append(DeliveryChannel.PUSH)
        return enabled

    async def aclose(self) -> None:
        await self.sms.aclose()
        await self.email.aclose()
        await self.push.aclose()
