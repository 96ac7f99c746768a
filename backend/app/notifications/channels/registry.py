"""
registry.py — Pick a real or null sender per channel from settings.
"""

from __future__ import annotations

import logging

from backend.app.core.config import Settings
from backend.app.notifications.channels.base import (
    ChannelSet,
    EmailSender,
    NullEmailSender,
    NullPushSender,
    NullSmsSender,
    PushSender,
    SmsSender,
)
from backend.app.notifications.channels.email_alert import SmtpEmailSender
from backend.app.notifications.channels.sms_gateway import TwilioSmsSender
from backend.app.notifications.channels.web_push import WebhookPushSender

logger = logging.getLogger(__name__)


def build_channels(settings: Settings) -> ChannelSet:
    """Credential presence decides each channel; missing credentials disable it quietly."""
    sms: SmsSender = NullSmsSender()
    email: EmailSender = NullEmailSender()
    push: PushSender = NullPushSender()

    if settings.sms_configured:
        sms = TwilioSmsSender(
            settings.TWILIO_ACCOUNT_SID,
            settings.TWILIO_AUTH_TOKEN,
            settings.TWILIO_FROM_NUMBER,
            timeout_seconds=settings.CHANNEL_TIMEOUT_SECONDS,
        )
    if settings.email_configured:
        email = SmtpEmailSender(
            settings.SMTP_HOST,
            settings.SMTP_PORT,
            username=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            from_address=settings.SMTP_FROM_ADDRESS,
            use_tls=settings.SMTP_USE_TLS,
            timeout_seconds=settings.CHANNEL_TIMEOUT_SECONDS,
        )
    if settings.push_configured:
        push = WebhookPushSender(
            settings.PUSH_GATEWAY_URL,
            token=settings.PUSH_GATEWAY_TOKEN,
            timeout_seconds=settings.CHANNEL_TIMEOUT_SECONDS,
        )

    channels = ChannelSet(sms=sms, email=email, push=push)
    logger.info(
        "Notification channels enabled: %s",
        [c.value for c in channels.enabled_channels()] or "none (records only)",
    )
    return channels
