"""Tests for SchedulerService."""

from datetime import UTC, datetime, timedelta

import pytest

from dcaspine.core.errors import InvalidConfigError
from dcaspine.core.models import ExecutionStatus, PlanStatus
from dcaspine.scheduling import (
    SCAN_LOCK_RESOURCE,
    LockManager,
    SchedulerService,
    SchedulerStats,
    ThreadSchedulerBackend,
)


class TestSchedulerServiceLifecycle:
    """Test SchedulerService start/stop lifecycle."""

    def test_start_and_stop(self, scheduler_service):
        assert scheduler_service.is_running is False

        scheduler_service.start()
        assert scheduler_service.is_running is True

        scheduler_service.stop()
        assert scheduler_service.is_running is False

    def test_double_start_ignored(self, scheduler_service):
        scheduler_service.start()
        scheduler_service.start()

        assert scheduler_service.is_running is True

    def test_stop_when_not_running(self, scheduler_service):
        scheduler_service.stop()
        assert scheduler_service.is_running is False

    @pytest.mark.parametrize("lease", [0, 60, 90])
    def test_scan_lease_must_be_shorter_than_interval(self, scanner, engine, lock_manager, lease):
        with pytest.raises(InvalidConfigError):
            SchedulerService(
                backend=ThreadSchedulerBackend(),
                scanner=scanner,
                engine=engine,
                lock_manager=lock_manager,
                interval_seconds=60,
                scan_lock_lease_seconds=lease,
            )


class TestTick:
    """Test one tick end to end."""

    @pytest.mark.asyncio
    async def test_no_due_plans(self, scheduler_service, lock_manager):
        summary = await scheduler_service.tick()

        assert summary.scan_lock_acquired is True
        assert summary.due == 0
        assert summary.results == []
        assert lock_manager.is_locked(SCAN_LOCK_RESOURCE) is False

    @pytest.mark.asyncio
    async def test_executes_due_plans_oldest_first(self, scheduler_service, make_plan, ledger):
        now = datetime.now(UTC)
        newer = make_plan(due_at=now - timedelta(minutes=5))
        older = make_plan(due_at=now - timedelta(hours=5))

        summary = await scheduler_service.tick()

        assert summary.due == 2
        assert summary.executed == 2
        assert [plan_id for plan_id, *_ in ledger.submitted] == [older.id, newer.id]
        assert scheduler_service.get_stats().plans_executed == 2

    @pytest.mark.asyncio
    async def test_scan_lock_held_elsewhere_skips_tick(
        self, scheduler_service, lock_store, make_plan, ledger
    ):
        make_plan()
        other = LockManager(lock_store, instance_id="other-instance")
        assert other.acquire(SCAN_LOCK_RESOURCE, 55) is not None

        summary = await scheduler_service.tick()

        assert summary.scan_lock_acquired is False
        assert ledger.submitted == []
        stats = scheduler_service.get_stats()
        assert stats.tick_count == 1
        assert stats.ticks_skipped == 1

    @pytest.mark.asyncio
    async def test_second_tick_finds_nothing(self, scheduler_service, make_plan):
        make_plan()

        first = await scheduler_service.tick()
        second = await scheduler_service.tick()

        assert first.executed == 1
        assert second.due == 0

    @pytest.mark.asyncio
    async def test_errored_plan_does_not_stop_batch(
        self, scheduler_service, make_plan, monkeypatch
    ):
        now = datetime.now(UTC)
        bad = make_plan(due_at=now - timedelta(hours=1))
        good = make_plan(due_at=now - timedelta(minutes=1))
        real_execute = scheduler_service.engine.execute_plan

        def execute(plan_id):
            if plan_id == bad.id:
                raise RuntimeError("database went away")
            return real_execute(plan_id)

        monkeypatch.setattr(scheduler_service.engine, "execute_plan", execute)

        summary = await scheduler_service.tick()

        assert summary.errored == [bad.id]
        assert summary.executed == 1
        assert summary.results[0].plan_id == good.id
        stats = scheduler_service.get_stats()
        assert stats.plans_errored == 1
        assert stats.last_error == "database went away"

    @pytest.mark.asyncio
    async def test_plan_locked_elsewhere_is_skipped(
        self, scheduler_service, make_plan, lock_store
    ):
        plan = make_plan()
        other = LockManager(lock_store, instance_id="other-instance")
        assert other.acquire(f"dca-execution:{plan.id}", 45) is not None

        summary = await scheduler_service.tick()

        assert summary.skipped == [plan.id]
        assert scheduler_service.get_stats().plans_skipped == 1

    @pytest.mark.asyncio
    async def test_failed_plan_counted_and_stays_due(
        self, scheduler_service, make_plan, price_source, repository
    ):
        plan = make_plan()
        price_source.fail = True

        summary = await scheduler_service.tick()

        assert summary.failed == 1
        assert summary.results[0].status == ExecutionStatus.FAILED
        assert scheduler_service.get_stats().plans_failed == 1
        assert repository.get_plan(plan.id).executions_completed == 0

    @pytest.mark.asyncio
    async def test_scan_failure_is_contained(self, scheduler_service, monkeypatch, lock_manager):
        def broken():
            raise RuntimeError("scan failed")

        monkeypatch.setattr(scheduler_service.scanner, "get_due_plans", broken)

        summary = await scheduler_service.tick()

        assert summary.scan_lock_acquired is True
        assert scheduler_service.get_stats().last_error == "scan failed"
        assert lock_manager.is_locked(SCAN_LOCK_RESOURCE) is False

    @pytest.mark.asyncio
    async def test_summary_to_dict(self, scheduler_service, make_plan):
        make_plan()

        summary = await scheduler_service.tick()

        assert summary.to_dict() == {
            "scan_lock_acquired": True,
            "due": 1,
            "executed": 1,
            "failed": 0,
            "skipped": 0,
            "errored": 0,
        }


class TestExecuteNow:
    """Test manual execution."""

    @pytest.mark.asyncio
    async def test_execute_now_runs_due_plan(self, scheduler_service, make_plan):
        plan = make_plan()

        result = await scheduler_service.execute_now(plan.id)

        assert result.succeeded
        assert result.execution_number == 1

    @pytest.mark.asyncio
    async def test_execute_now_on_paused_plan(self, scheduler_service, make_plan):
        plan = make_plan(status=PlanStatus.PAUSED)

        result = await scheduler_service.execute_now(plan.id)

        assert result.status == ExecutionStatus.FAILED
        assert result.error_message == "Plan not active"


class TestSchedulerServiceHealth:
    """Test health and stats."""

    def test_health_before_start(self, scheduler_service, make_plan):
        make_plan()
        make_plan(status=PlanStatus.PAUSED)

        health = scheduler_service.health()

        assert health.healthy is False
        assert health.plans_active == 1
        assert health.scan_lock_holder is None
        assert health.to_dict()["backend"]["backend"] == "thread"

    def test_health_after_start(self, scheduler_service):
        scheduler_service.start()

        health = scheduler_service.health()

        assert health.healthy is True
        assert health.to_dict()["stats"]["tick_count"] == 0

    @pytest.mark.asyncio
    async def test_reset_stats(self, scheduler_service):
        await scheduler_service.tick()
        assert scheduler_service.get_stats().tick_count == 1

        scheduler_service.reset_stats()

        assert scheduler_service.get_stats() == SchedulerStats()
