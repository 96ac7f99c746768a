"""
container.py — Builds and owns the long-lived service objects.

    Settings ──► stores (memory | sql) ──► channels ──► dispatcher
                                              │
                                              ├──► ReportService (+ abuse, audit)
                                              └──► RadiusExpansionEngine

One container per process. The FastAPI lifespan builds it, starts the engine
and closes it on shutdown; tests build one over in-memory stores.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.core.config import Settings, get_settings
from backend.app.core.database import create_engine_for_url, create_session_factory, init_db
from backend.app.jobs.radius_expansion import RadiusExpansionEngine
from backend.app.notifications.channels.base import ChannelSet
from backend.app.notifications.channels.registry import build_channels
from backend.app.notifications.dispatcher import NotificationDispatcher
from backend.app.reports.models import utcnow
from backend.app.reports.service import ReportService
from backend.app.reports.sql_store import (
    SqlAbuseReportStore,
    SqlAuditLog,
    SqlCommentStore,
    SqlCycleLease,
    SqlNotificationStore,
    SqlReportStore,
    SqlUserDirectory,
)
from backend.app.reports.store import (
    AbuseReportStore,
    AuditLog,
    CommentStore,
    CycleLease,
    InMemoryAbuseReportStore,
    InMemoryAuditLog,
    InMemoryCommentStore,
    InMemoryCycleLease,
    InMemoryNotificationStore,
    InMemoryReportStore,
    InMemoryUserDirectory,
    NotificationStore,
    ReportStore,
    UserDirectory,
)

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    reports: ReportStore
    users: UserDirectory
    notifications: NotificationStore
    comments: CommentStore
    abuse_reports: AbuseReportStore
    audit_log: AuditLog
    channels: ChannelSet
    dispatcher: NotificationDispatcher
    report_service: ReportService
    engine: RadiusExpansionEngine
    db_engine: Optional[AsyncEngine] = None

    @property
    def storage_backend(self) -> str:
        return "sql" if self.db_engine is not None else "memory"

    async def init_storage(self) -> None:
        if self.db_engine is not None:
            await init_db(self.db_engine)

    async def aclose(self) -> None:
        """Stop the job (letting an in-flight cycle finish) and release resources."""
        await self.engine.stop(wait=True)
        await self.channels.aclose()
        if self.db_engine is not None:
            await self.db_engine.dispose()
            logger.info("Database connections closed")


def build_container(
    settings: Optional[Settings] = None,
    *,
    channels: Optional[ChannelSet] = None,
    clock: Callable[[], datetime] = utcnow,
) -> ServiceContainer:
    settings = settings or get_settings()
    db_engine: Optional[AsyncEngine] = None
    lease: Optional[CycleLease] = None

    if settings.STORE_BACKEND == "sql":
        db_engine = create_engine_for_url(
            settings.DATABASE_URL,
            echo=settings.DATABASE_ECHO,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
        )
        factory = create_session_factory(db_engine)
        reports: ReportStore = SqlReportStore(factory)
        users: UserDirectory = SqlUserDirectory(factory)
        notifications: NotificationStore = SqlNotificationStore(factory)
        comments: CommentStore = SqlCommentStore(factory)
        abuse_reports: AbuseReportStore = SqlAbuseReportStore(factory)
        audit_log: AuditLog = SqlAuditLog(factory)
        if settings.RADIUS_JOB_DISTRIBUTED_LOCK:
            lease = SqlCycleLease(factory)
    else:
        reports = InMemoryReportStore()
        users = InMemoryUserDirectory()
        notifications = InMemoryNotificationStore()
        comments = InMemoryCommentStore()
        abuse_reports = InMemoryAbuseReportStore()
        audit_log = InMemoryAuditLog()
        if settings.RADIUS_JOB_DISTRIBUTED_LOCK:
            lease = InMemoryCycleLease()

    channels = channels or build_channels(settings)
    dispatcher = NotificationDispatcher(users, notifications, channels)
    report_service = ReportService(
        reports, users, comments, dispatcher,
        abuse_reports=abuse_reports,
        audit_log=audit_log,
        default_radius_km=settings.DEFAULT_INITIAL_RADIUS_KM,
        clock=clock,
    )
    engine = RadiusExpansionEngine(
        reports,
        dispatcher,
        interval_seconds=settings.RADIUS_JOB_INTERVAL_SECONDS,
        step_km=settings.RADIUS_EXPANSION_STEP_KM,
        threshold_hours=settings.RADIUS_EXPANSION_THRESHOLD_HOURS,
        clock=clock,
        lease=lease,
        lease_seconds=settings.RADIUS_JOB_LEASE_SECONDS,
    )

    logger.info(
        "Service container built (store=%s, distributed_lock=%s)",
        settings.STORE_BACKEND, lease is not None,
    )
    return ServiceContainer(
        settings=settings,
        reports=reports,
        users=users,
        notifications=notifications,
        comments=comments,
        abuse_reports=abuse_reports,
        audit_log=audit_log,
        channels=channels,
        dispatcher=dispatcher,
        report_service=report_service,
        engine=engine,
        db_engine=db_engine,
    )
