"""
radius_expansion.py — Periodic widening of ACTIVE report alert radii.

═══════════════════════════════════════════════════════════════════════════
SCHEDULE
═══════════════════════════════════════════════════════════════════════════

    start() ──► tick ──► tick ──► tick ──► ...      (one tick per interval,
                 │        │        │                 first tick immediately)
                 ▼        ▼        ▼
              cycle    cycle    SKIPPED             (previous still running)

Each tick launches the cycle as its own task, so a slow cycle never delays
the schedule, and a tick that lands while a cycle is still running is
skipped rather than queued. stop() cancels the scheduler loop only; a cycle
already in flight runs to completion.

═══════════════════════════════════════════════════════════════════════════
ONE CYCLE
═══════════════════════════════════════════════════════════════════════════

    1. (optional) acquire the cross-replica lease   → LEASE_HELD if taken
    2. load ACTIVE reports                          → NO_ACTIVE_REPORTS if none
    3. for each report, independently:
         hours = now - last_expanded_at
         hours <  threshold  → not due
         hours >= threshold  → radius += step (history entry, same write,
                               only if last_expanded_at is still the one
                               read in step 2, otherwise not due)
                               → notify_radius_expansion
    4. record CycleResult

A report is expanded at most once per cycle however long it was overdue.
The cycle timestamp `now` is captured once and used for every report.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from backend.app.core.errors import StaleReportError
from backend.app.notifications.dispatcher import NotificationDispatcher
from backend.app.reports.models import ExpandedBy, Report, utcnow
from backend.app.reports.store import CycleLease, ReportStore

logger = logging.getLogger(__name__)


class CycleStatus(str, Enum):
    SKIPPED           = "skipped"            # previous cycle still running
    LEASE_HELD        = "lease_held"         # another replica owns this cycle
    NO_ACTIVE_REPORTS = "no_active_reports"
    COMPLETED         = "completed"
    FAILED            = "failed"             # report query or lease failed


@dataclass
class CycleResult:
    cycle_id: str
    status: CycleStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    examined: int = 0
    expanded: List[str] = field(default_factory=list)
    not_due: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    notifications: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "examined": self.examined,
            "expanded": list(self.expanded),
            "not_due": len(self.not_due),
            "failed": list(self.failed),
            "notifications": self.notifications,
            "error": self.error,
        }


class RadiusExpansionEngine:
    """
    Widens the alert radius of every ACTIVE report once it has gone
    `threshold_hours` without a change.

    Usage:
        engine = RadiusExpansionEngine(report_store, dispatcher)
        await engine.start()          # first cycle now, then hourly
        ...
        await engine.stop(wait=True)  # let an in-flight cycle finish

    Parameters
    ----------
    reports : ReportStore
    dispatcher : NotificationDispatcher
    interval_seconds : float
        Time between ticks.
    step_km : float
        Radius added per expansion.
    threshold_hours : float
        Minimum age of the last expansion before the next one.
    clock : callable
        Returns the current aware UTC datetime.
    lease : CycleLease | None
        When set, only the replica holding the lease runs a cycle.
    lease_seconds : float
        Lease expiry, so a crashed replica does not block the others.
    """

    def __init__(
        self,
        reports: ReportStore,
        dispatcher: NotificationDispatcher,
        *,
        interval_seconds: float = 3600.0,
        step_km: float = 5.0,
        threshold_hours: float = 24.0,
        clock: Callable[[], datetime] = utcnow,
        lease: Optional[CycleLease] = None,
        lease_seconds: float = 3300.0,
    ):
        self._reports = reports
        self._dispatcher = dispatcher
        self._interval = interval_seconds
        self._step_km = step_km
        self._threshold_hours = threshold_hours
        self._clock = clock
        self._lease = lease
        self._lease_ttl = timedelta(seconds=lease_seconds)
        self._owner_id = uuid.uuid4().hex

        self._scheduler_task: Optional[asyncio.Task] = None
        self._cycle_tasks: Set[asyncio.Task] = set()
        self._cycle_in_progress = False
        self._last_result: Optional[CycleResult] = None
        self._cycles_run = 0
        self._ticks_skipped = 0

    @property
    def is_started(self) -> bool:
        return self._scheduler_task is not None

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_in_progress

    @property
    def last_result(self) -> Optional[CycleResult]:
        return self._last_result

    # ═══════════════════════════════════════════════════════════════════
    # Lifecycle
    # ═══════════════════════════════════════════════════════════════════

    async def start(self) -> None:
        """Start ticking. A second call while started is a no-op."""
        if self._scheduler_task is not None:
            return
        self._scheduler_task = asyncio.create_task(self._run_scheduler())
        logger.info(
            "Radius expansion job started (every %.0fs, +%g km after %gh)",
            self._interval, self._step_km, self._threshold_hours,
        )

    async def stop(self, wait: bool = False) -> None:
        """
        Cancel the next tick. An in-flight cycle is not interrupted; pass
        wait=True to await it. Calling stop on a stopped engine is a no-op.
        """
        task = self._scheduler_task
        if task is not None:
            self._scheduler_task = None
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Radius expansion job stopped")

        if wait and self._cycle_tasks:
            await asyncio.gather(*list(self._cycle_tasks), return_exceptions=True)

    async def _run_scheduler(self) -> None:
        while True:
            self._launch_cycle()
            await asyncio.sleep(self._interval)

    def _launch_cycle(self) -> asyncio.Task:
        task = asyncio.create_task(self.run_cycle())
        self._cycle_tasks.add(task)
        task.add_done_callback(self._on_cycle_done)
        return task

    def _on_cycle_done(self, task: asyncio.Task) -> None:
        self._cycle_tasks.discard(task)
        if task.cancelled():
            logger.warning("Radius expansion cycle was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Radius expansion cycle crashed: %s", exc, exc_info=exc)

    # ═══════════════════════════════════════════════════════════════════
    # One cycle
    # ═══════════════════════════════════════════════════════════════════

    async def run_cycle(self) -> CycleResult:
        """Run one expansion cycle now, or return SKIPPED if one is running."""
        now = self._clock()
        cycle_id = uuid.uuid4().hex[:12]

        if self._cycle_in_progress:
            self._ticks_skipped += 1
            logger.info(
                "Radius expansion cycle %s skipped: previous cycle still running",
                cycle_id, extra={"cycle_id": cycle_id},
            )
            return CycleResult(
                cycle_id=cycle_id,
                status=CycleStatus.SKIPPED,
                started_at=now,
                completed_at=now,
            )

        self._cycle_in_progress = True
        started = time.perf_counter()
        result = CycleResult(cycle_id=cycle_id, status=CycleStatus.COMPLETED, started_at=now)
        try:
            await self._execute(result, now)
        except Exception as exc:
            result.status = CycleStatus.FAILED
            result.error = str(exc)
            logger.exception(
                "Radius expansion cycle %s failed", cycle_id,
                extra={"cycle_id": cycle_id},
            )
        finally:
            result.completed_at = self._clock()
            self._cycle_in_progress = False
            self._last_result = result
            self._cycles_run += 1

        logger.info(
            "Radius expansion cycle %s %s: %d examined, %d expanded, %d failed, %d notifications",
            cycle_id, result.status.value, result.examined,
            len(result.expanded), len(result.failed), result.notifications,
            extra={
                "cycle_id": cycle_id,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return result

    async def _execute(self, result: CycleResult, now: datetime) -> None:
        if self._lease is None:
            await self._expand_due_reports(result, now)
            return

        if not await self._lease.try_acquire(self._owner_id, now, self._lease_ttl):
            result.status = CycleStatus.LEASE_HELD
            return
        try:
            await self._expand_due_reports(result, now)
        finally:
            await self._lease.release(self._owner_id)

    async def _expand_due_reports(self, result: CycleResult, now: datetime) -> None:
        reports = await self._reports.find_active_reports()
        if not reports:
            result.status = CycleStatus.NO_ACTIVE_REPORTS
            return

        for report in reports:
            result.examined += 1
            try:
                await self._expand_if_due(report, now, result)
            except Exception:
                result.failed.append(report.id)
                logger.exception(
                    "Radius expansion failed for report %s", report.id,
                    extra={"cycle_id": result.cycle_id, "report_id": report.id},
                )

    async def _expand_if_due(self, report: Report, now: datetime, result: CycleResult) -> None:
        hours_since = (now - report.last_expanded_at).total_seconds() / 3600.0
        if hours_since < self._threshold_hours:
            result.not_due.append(report.id)
            return

        new_radius = report.current_radius + self._step_km
        try:
            updated = await self._reports.update_report_radius(
                report.id, new_radius, now,
                expanded_by=ExpandedBy.SYSTEM,
                reason=None,
                expected_last_expand=report.last_expanded_at,
            )
        except StaleReportError:
            # Changed since the snapshot (e.g. an admin expansion); its clock restarts
            result.not_due.append(report.id)
            logger.info(
                "Report %s changed during cycle %s; not expanded",
                report.id, result.cycle_id,
                extra={"cycle_id": result.cycle_id, "report_id": report.id},
            )
            return
        result.expanded.append(report.id)
        logger.info(
            "Report %s radius %g → %g km (%.1fh since last change)",
            report.id, report.current_radius, new_radius, hours_since,
            extra={"cycle_id": result.cycle_id, "report_id": report.id},
        )

        summary = await self._dispatcher.notify_radius_expansion(updated, new_radius)
        result.notifications += summary.persisted

    # ═══════════════════════════════════════════════════════════════════
    # Introspection
    # ═══════════════════════════════════════════════════════════════════

    def status(self) -> Dict[str, Any]:
        return {
            "started": self.is_started,
            "cycle_in_progress": self._cycle_in_progress,
            "interval_seconds": self._interval,
            "step_km": self._step_km,
            "threshold_hours": self._threshold_hours,
            "distributed_lock": self._lease is not None,
            "cycles_run": self._cycles_run,
            "ticks_skipped": self._ticks_skipped,
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }
