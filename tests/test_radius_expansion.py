"""
test_radius_expansion.py — Tests for the hourly radius expansion engine.

Covers:
    • Eligibility (strict 24h threshold, history vs cached timestamp)
    • Single-step expansion with provenance
    • At-most-one concurrent cycle (skip, never queue)
    • Reports changed between snapshot and write are left alone
    • Per-report failure isolation and cycle-level failure containment
    • Monotonic radius
    • Scheduler lifecycle (immediate first tick, idempotent start/stop)
    • Cross-replica lease

Run with:
    pytest tests/test_radius_expansion.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from backend.app.core.errors import NotFoundError, ReportStateError, StaleReportError
from backend.app.jobs.radius_expansion import (
    CycleResult,
    CycleStatus,
    RadiusExpansionEngine,
)
from backend.app.notifications.dispatcher import NotificationDispatcher
from backend.app.reports.models import (
    ExpandedBy,
    NotificationType,
    RadiusHistoryEntry,
    Report,
    ReportStatus,
    User,
    UserRole,
    VerificationStatus,
)
from backend.app.reports.store import (
    InMemoryCycleLease,
    InMemoryNotificationStore,
    InMemoryReportStore,
    InMemoryUserDirectory,
)


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class _Clock:
    """Controllable clock."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


def _make_report(
    rid: str = "r1",
    hours_since_expand: float = 30.0,
    radius: float = 5.0,
    status: ReportStatus = ReportStatus.ACTIVE,
    with_history: bool = True,
) -> Report:
    last = NOW - timedelta(hours=hours_since_expand)
    history = (
        [RadiusHistoryEntry(radius, last, ExpandedBy.SYSTEM, "Initial radius")]
        if with_history else []
    )
    return Report(
        id=rid,
        title=f"Missing person {rid}",
        description="Last seen near the bus stand",
        category="MISSING_PERSON",
        latitude=13.0827,
        longitude=80.2707,
        initial_radius=radius,
        current_radius=radius,
        author_id="author-1",
        status=status,
        last_radius_expand=last,
        radius_history=history,
        created_at=last,
        updated_at=last,
    )


def _make_user(
    uid: str,
    role: UserRole = UserRole.POLICE,
    verified: bool = True,
    status: VerificationStatus = VerificationStatus.APPROVED,
) -> User:
    return User(
        id=uid,
        email=f"{uid}@example.com",
        first_name=uid,
        phone="+919876543210",
        user_type=role,
        is_verified=verified,
        verification_status=status,
    )


class _Harness:
    def __init__(self, store: InMemoryReportStore, users: List[User], clock: _Clock, **engine_kwargs):
        self.clock = clock
        self.reports = store
        self.users = InMemoryUserDirectory(users)
        self.notifications = InMemoryNotificationStore()
        self.dispatcher = NotificationDispatcher(self.users, self.notifications)
        self.engine = RadiusExpansionEngine(
            self.reports, self.dispatcher, clock=clock, **engine_kwargs,
        )


async def _harness(
    reports: List[Report],
    users: Optional[List[User]] = None,
    store: Optional[InMemoryReportStore] = None,
    clock: Optional[_Clock] = None,
    **engine_kwargs,
) -> _Harness:
    store = store or InMemoryReportStore()
    for report in reports:
        await store.insert_report(report)
    if users is None:
        users = [_make_user("u1")]
    return _Harness(store, users, clock or _Clock(), **engine_kwargs)


class _FailingReportStore(InMemoryReportStore):
    """Raises on the radius write for selected report ids."""

    def __init__(self, failing_ids):
        super().__init__()
        self.failing_ids = set(failing_ids)

    async def update_report_radius(self, report_id, new_radius, now, **kwargs):
        if report_id in self.failing_ids:
            raise ConnectionError("write timed out")
        return await super().update_report_radius(report_id, new_radius, now, **kwargs)


class _SlowReportStore(InMemoryReportStore):
    """Blocks find_active_reports until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def find_active_reports(self):
        self.entered.set()
        await self.release.wait()
        return await super().find_active_reports()


class _BrokenQueryStore(InMemoryReportStore):
    async def find_active_reports(self):
        raise ConnectionError("database unavailable")


class _AdminRaceStore(InMemoryReportStore):
    """Applies an admin expansion right after handing out the active snapshot."""

    def __init__(self, admin_radius: float, admin_at: datetime):
        super().__init__()
        self.admin_radius = admin_radius
        self.admin_at = admin_at

    async def find_active_reports(self):
        snapshot = await super().find_active_reports()
        for report in snapshot:
            await self.update_report_radius(
                report.id, self.admin_radius, self.admin_at,
                expanded_by=ExpandedBy.ADMIN, reason="Sighting",
            )
        return snapshot


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Eligibility
# ═══════════════════════════════════════════════════════════════════════════

class TestEligibility:

    def test_recent_report_left_untouched(self):
        async def scenario():
            h = await _harness([_make_report(hours_since_expand=10)])
            before = await h.reports.find_report_by_id("r1")
            result = await h.engine.run_cycle()
            after = await h.reports.find_report_by_id("r1")
            return before, after, result

        before, after, result = asyncio.run(scenario())
        assert result.status == CycleStatus.COMPLETED
        assert result.not_due == ["r1"]
        assert result.expanded == []
        assert after.current_radius == before.current_radius
        assert after.last_radius_expand == before.last_radius_expand
        assert len(after.radius_history) == len(before.radius_history)

    def test_just_under_threshold_skips(self):
        async def scenario():
            h = await _harness([_make_report(hours_since_expand=23.99)])
            return await h.engine.run_cycle()

        assert asyncio.run(scenario()).expanded == []

    def test_exactly_threshold_expands(self):
        async def scenario():
            h = await _harness([_make_report(hours_since_expand=24.0)])
            return await h.engine.run_cycle()

        assert asyncio.run(scenario()).expanded == ["r1"]

    def test_history_takes_precedence_over_cached_timestamp(self):
        report = _make_report(hours_since_expand=48)
        report.radius_history.append(
            RadiusHistoryEntry(10.0, NOW - timedelta(hours=2), ExpandedBy.ADMIN, "manual")
        )
        report.current_radius = 10.0

        async def scenario():
            h = await _harness([report])
            return await h.engine.run_cycle()

        assert asyncio.run(scenario()).not_due == ["r1"]

    def test_falls_back_to_created_at_without_history(self):
        report = _make_report(hours_since_expand=30, with_history=False)
        report.last_radius_expand = None

        async def scenario():
            h = await _harness([report])
            return await h.engine.run_cycle()

        assert asyncio.run(scenario()).expanded == ["r1"]

    def test_non_active_reports_ignored(self):
        async def scenario():
            h = await _harness([
                _make_report("r1", status=ReportStatus.RESOLVED),
                _make_report("r2", status=ReportStatus.EXPIRED),
            ])
            return await h.engine.run_cycle()

        result = asyncio.run(scenario())
        assert result.status == CycleStatus.NO_ACTIVE_REPORTS
        assert result.examined == 0

    def test_no_reports_is_noop(self):
        async def scenario():
            h = await _harness([])
            result = await h.engine.run_cycle()
            return result, h.notifications.notifications

        result, notifications = asyncio.run(scenario())
        assert result.status == CycleStatus.NO_ACTIVE_REPORTS
        assert notifications == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Expansion
# ═══════════════════════════════════════════════════════════════════════════

class TestSingleStepExpansion:

    def test_thirty_hour_old_report_grows_by_five(self):
        async def scenario():
            h = await _harness([_make_report(hours_since_expand=30, radius=5.0)])
            await h.engine.run_cycle()
            return await h.reports.find_report_by_id("r1")

        report = asyncio.run(scenario())
        assert report.current_radius == 10.0
        assert report.last_radius_expand == NOW
        assert report.updated_at == NOW
        assert len(report.radius_history) == 2
        entry = report.radius_history[-1]
        assert entry.radius == 10.0
        assert entry.expanded_by == ExpandedBy.SYSTEM
        assert entry.expanded_at == NOW
        assert entry.reason is None

    def test_no_catch_up_for_long_overdue_report(self):
        async def scenario():
            h = await _harness([_make_report(hours_since_expand=24 * 7, radius=5.0)])
            await h.engine.run_cycle()
            return await h.reports.find_report_by_id("r1")

        assert asyncio.run(scenario()).current_radius == 10.0

    def test_expansion_notifies_verified_users(self):
        async def scenario():
            h = await _harness(
                [_make_report()],
                users=[_make_user("u1"), _make_user("u2", role=UserRole.CITIZEN)],
            )
            result = await h.engine.run_cycle()
            return result, h.notifications.notifications

        result, notifications = asyncio.run(scenario())
        assert result.notifications == 2
        assert {n.user_id for n in notifications} == {"u1", "u2"}
        assert all(n.type == NotificationType.RADIUS_EXPANDED for n in notifications)
        assert notifications[0].message == 'Search radius for "Missing person r1" expanded to 10 km'

    def test_custom_step(self):
        async def scenario():
            h = await _harness([_make_report(radius=5.0)], step_km=2.5)
            await h.engine.run_cycle()
            return await h.reports.find_report_by_id("r1")

        assert asyncio.run(scenario()).current_radius == 7.5

    def test_second_cycle_same_clock_does_not_expand_again(self):
        async def scenario():
            h = await _harness([_make_report()])
            first = await h.engine.run_cycle()
            second = await h.engine.run_cycle()
            report = await h.reports.find_report_by_id("r1")
            return first, second, report

        first, second, report = asyncio.run(scenario())
        assert first.expanded == ["r1"]
        assert second.not_due == ["r1"]
        assert report.current_radius == 10.0

    def test_expands_again_after_another_day(self):
        async def scenario():
            clock = _Clock()
            h = await _harness([_make_report()], clock=clock)
            await h.engine.run_cycle()
            clock.advance(hours=23)
            await h.engine.run_cycle()
            clock.advance(hours=1)
            await h.engine.run_cycle()
            return await h.reports.find_report_by_id("r1")

        report = asyncio.run(scenario())
        assert report.current_radius == 15.0
        assert [e.radius for e in report.radius_history] == [5.0, 10.0, 15.0]


class TestMonotonicity:

    def test_radius_never_decreases_across_cycles(self):
        async def scenario():
            clock = _Clock()
            h = await _harness([_make_report()], clock=clock)
            radii = []
            for _ in range(72):
                await h.engine.run_cycle()
                radii.append((await h.reports.find_report_by_id("r1")).current_radius)
                clock.advance(hours=1)
            return radii

        radii = asyncio.run(scenario())
        assert all(a <= b for a, b in zip(radii, radii[1:]))
        assert radii[-1] == 20.0

    def test_store_rejects_shrinking(self):
        async def scenario():
            store = InMemoryReportStore()
            await store.insert_report(_make_report(radius=10.0))
            with pytest.raises(ReportStateError):
                await store.update_report_radius("r1", 5.0, NOW)
            return await store.find_report_by_id("r1")

        report = asyncio.run(scenario())
        assert report.current_radius == 10.0
        assert len(report.radius_history) == 1

    def test_store_rejects_non_active(self):
        async def scenario():
            store = InMemoryReportStore()
            await store.insert_report(_make_report(status=ReportStatus.RESOLVED))
            with pytest.raises(ReportStateError):
                await store.update_report_radius("r1", 15.0, NOW)

        asyncio.run(scenario())

    def test_store_unknown_id(self):
        async def scenario():
            with pytest.raises(NotFoundError):
                await InMemoryReportStore().update_report_radius("missing", 10.0, NOW)

        asyncio.run(scenario())


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Concurrency
# ═══════════════════════════════════════════════════════════════════════════

class TestNoOverlappingCycles:

    def test_second_invocation_while_running_is_skipped(self):
        async def scenario():
            store = _SlowReportStore()
            h = await _harness([_make_report()], store=store)
            first = asyncio.create_task(h.engine.run_cycle())
            await store.entered.wait()
            assert h.engine.cycle_in_progress
            second = await h.engine.run_cycle()
            store.release.set()
            first_result = await first
            report = await h.reports.find_report_by_id("r1")
            return first_result, second, report

        first, second, report = asyncio.run(scenario())
        assert second.status == CycleStatus.SKIPPED
        assert second.expanded == []
        assert first.status == CycleStatus.COMPLETED
        assert first.expanded == ["r1"]
        assert report.current_radius == 10.0
        assert len(report.radius_history) == 2

    def test_skip_does_not_replace_last_result(self):
        async def scenario():
            store = _SlowReportStore()
            h = await _harness([_make_report()], store=store)
            first = asyncio.create_task(h.engine.run_cycle())
            await store.entered.wait()
            await h.engine.run_cycle()
            store.release.set()
            await first
            return h.engine

        engine = asyncio.run(scenario())
        assert engine.last_result.status == CycleStatus.COMPLETED
        assert engine.status()["ticks_skipped"] == 1
        assert engine.status()["cycles_run"] == 1


class TestChangedDuringCycle:

    def _run(self, admin_radius: float):
        async def scenario():
            store = _AdminRaceStore(admin_radius, NOW - timedelta(minutes=1))
            h = await _harness([_make_report(radius=5.0)], store=store)
            result = await h.engine.run_cycle()
            report = await h.reports.find_report_by_id("r1")
            return result, report, h.notifications.notifications

        return asyncio.run(scenario())

    def test_larger_admin_radius_counts_as_not_due(self):
        result, report, notes = self._run(20.0)
        assert result.status == CycleStatus.COMPLETED
        assert result.expanded == []
        assert result.failed == []
        assert result.not_due == ["r1"]
        assert report.current_radius == 20.0
        assert [(e.radius, e.expanded_by) for e in report.radius_history] == [
            (5.0, ExpandedBy.SYSTEM), (20.0, ExpandedBy.ADMIN),
        ]
        assert notes == []

    def test_smaller_admin_radius_restarts_the_clock(self):
        result, report, _ = self._run(7.0)
        assert result.expanded == []
        assert result.not_due == ["r1"]
        assert report.current_radius == 7.0
        assert report.radius_history[-1].expanded_by == ExpandedBy.ADMIN

    def test_store_rejects_write_over_newer_change(self):
        async def scenario():
            store = InMemoryReportStore()
            await store.insert_report(_make_report())
            snapshot = await store.find_report_by_id("r1")
            await store.update_report_radius(
                "r1", 8.0, NOW - timedelta(minutes=5), expanded_by=ExpandedBy.ADMIN,
            )
            with pytest.raises(StaleReportError):
                await store.update_report_radius(
                    "r1", 10.0, NOW, expected_last_expand=snapshot.last_expanded_at,
                )
            return await store.find_report_by_id("r1")

        report = asyncio.run(scenario())
        assert report.current_radius == 8.0
        assert len(report.radius_history) == 2


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Failure containment
# ═══════════════════════════════════════════════════════════════════════════

class TestFailureIsolation:

    def test_failed_write_on_one_report_spares_the_others(self):
        async def scenario():
            store = _FailingReportStore({"r2"})
            h = await _harness(
                [_make_report("r1"), _make_report("r2"), _make_report("r3")],
                store=store,
            )
            result = await h.engine.run_cycle()
            reports = {rid: await store.find_report_by_id(rid) for rid in ("r1", "r2", "r3")}
            return result, reports, h.notifications.notifications

        result, reports, notifications = asyncio.run(scenario())
        assert result.status == CycleStatus.COMPLETED
        assert sorted(result.expanded) == ["r1", "r3"]
        assert result.failed == ["r2"]
        assert reports["r1"].current_radius == 10.0
        assert reports["r3"].current_radius == 10.0
        assert reports["r2"].current_radius == 5.0
        assert reports["r2"].last_radius_expand == NOW - timedelta(hours=30)
        assert len(reports["r2"].radius_history) == 1
        assert {n.report_id for n in notifications} == {"r1", "r3"}

    def test_failed_report_retried_next_cycle(self):
        async def scenario():
            store = _FailingReportStore({"r1"})
            h = await _harness([_make_report("r1")], store=store)
            await h.engine.run_cycle()
            store.failing_ids.clear()
            result = await h.engine.run_cycle()
            return result

        assert asyncio.run(scenario()).expanded == ["r1"]

    def test_notification_failure_keeps_expansion(self):
        async def scenario():
            h = await _harness([_make_report()])

            async def boom(report, new_radius):
                raise RuntimeError("directory offline")

            h.dispatcher.notify_radius_expansion = boom
            result = await h.engine.run_cycle()
            report = await h.reports.find_report_by_id("r1")
            return result, report

        result, report = asyncio.run(scenario())
        assert result.expanded == ["r1"]
        assert result.failed == ["r1"]
        assert report.current_radius == 10.0

    def test_query_failure_ends_cycle_without_raising(self):
        async def scenario():
            h = await _harness([], store=_BrokenQueryStore())
            result = await h.engine.run_cycle()
            return result, h.engine

        result, engine = asyncio.run(scenario())
        assert result.status == CycleStatus.FAILED
        assert "database unavailable" in result.error
        assert engine.cycle_in_progress is False
        assert engine.last_result is result


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Scheduler lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestSchedulerLifecycle:

    def test_start_runs_first_cycle_immediately(self):
        async def scenario():
            h = await _harness([_make_report()], interval_seconds=3600)
            await h.engine.start()
            for _ in range(20):
                await asyncio.sleep(0)
            await h.engine.stop(wait=True)
            return h.engine, await h.reports.find_report_by_id("r1")

        engine, report = asyncio.run(scenario())
        assert engine.last_result is not None
        assert engine.last_result.status == CycleStatus.COMPLETED
        assert report.current_radius == 10.0

    def test_start_twice_is_noop(self):
        async def scenario():
            h = await _harness([], interval_seconds=3600)
            await h.engine.start()
            task = h.engine._scheduler_task
            await h.engine.start()
            same = h.engine._scheduler_task is task
            await h.engine.stop()
            return same

        assert asyncio.run(scenario()) is True

    def test_stop_without_start_is_noop(self):
        async def scenario():
            h = await _harness([])
            await h.engine.stop()
            await h.engine.stop(wait=True)
            return h.engine.is_started

        assert asyncio.run(scenario()) is False

    def test_stop_lets_in_flight_cycle_finish(self):
        async def scenario():
            store = _SlowReportStore()
            h = await _harness([_make_report()], store=store, interval_seconds=3600)
            await h.engine.start()
            await store.entered.wait()
            await h.engine.stop()
            assert not h.engine.is_started
            store.release.set()
            await h.engine.stop(wait=True)
            return h.engine.last_result

        result = asyncio.run(scenario())
        assert result is not None
        assert result.status == CycleStatus.COMPLETED
        assert result.expanded == ["r1"]

    def test_ticks_repeat_on_interval(self):
        async def scenario():
            h = await _harness([], interval_seconds=0.01)
            await h.engine.start()
            await asyncio.sleep(0.1)
            await h.engine.stop(wait=True)
            return h.engine.status()["cycles_run"]

        assert asyncio.run(scenario()) >= 2

    def test_restart_after_stop(self):
        async def scenario():
            h = await _harness([], interval_seconds=3600)
            await h.engine.start()
            await h.engine.stop(wait=True)
            await h.engine.start()
            started = h.engine.is_started
            await h.engine.stop(wait=True)
            return started

        assert asyncio.run(scenario()) is True

    def test_status_snapshot(self):
        async def scenario():
            h = await _harness([_make_report()])
            await h.engine.run_cycle()
            return h.engine.status()

        status = asyncio.run(scenario())
        assert status["started"] is False
        assert status["step_km"] == 5.0
        assert status["threshold_hours"] == 24.0
        assert status["last_result"]["status"] == "completed"
        assert status["last_result"]["expanded"] == ["r1"]


# ═══════════════════════════════════════════════════════════════════════════
# Section 6: Cross-replica lease
# ═══════════════════════════════════════════════════════════════════════════

class TestCycleLease:

    def test_cycle_skipped_when_other_replica_holds_lease(self):
        async def scenario():
            lease = InMemoryCycleLease()
            await lease.try_acquire("other-replica", NOW, timedelta(minutes=55))
            h = await _harness([_make_report()], lease=lease)
            result = await h.engine.run_cycle()
            report = await h.reports.find_report_by_id("r1")
            return result, report

        result, report = asyncio.run(scenario())
        assert result.status == CycleStatus.LEASE_HELD
        assert report.current_radius == 5.0

    def test_expired_lease_is_taken_over(self):
        async def scenario():
            lease = InMemoryCycleLease()
            await lease.try_acquire("crashed-replica", NOW - timedelta(hours=2), timedelta(minutes=55))
            h = await _harness([_make_report()], lease=lease)
            return await h.engine.run_cycle()

        assert asyncio.run(scenario()).expanded == ["r1"]

    def test_lease_released_after_cycle(self):
        async def scenario():
            lease = InMemoryCycleLease()
            h = await _harness([_make_report()], lease=lease)
            await h.engine.run_cycle()
            return await lease.try_acquire("someone-else", NOW, timedelta(minutes=55))

        assert asyncio.run(scenario()) is True


class TestCycleResult:

    def test_to_dict(self):
        result = CycleResult(
            cycle_id="abc",
            status=CycleStatus.COMPLETED,
            started_at=NOW,
            completed_at=NOW,
            examined=3,
            expanded=["r1"],
            not_due=["r2", "r3"],
        )
        d = result.to_dict()
        assert d["status"] == "completed"
        assert d["not_due"] == 2
        assert d["expanded"] == ["r1"]
        assert d["completed_at"] == NOW.isoformat()
