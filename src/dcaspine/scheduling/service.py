"""Scheduler service - the tick orchestrator.

Manifesto:
    Every scheduler instance ticks on the same cadence; the cluster-wide
    scan lock decides which one does the work for a given tick. The winner
    scans for due plans and hands them to the execution engine one at a
    time. Nothing a single plan does, including raising, may stop the rest
    of the batch or kill the service.

Tags:
    dcaspine, scheduling, orchestrator, beat-as-poller, service

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  TICK STATE MACHINE                                                           │
│                                                                               │
│   Idle ──tick──► acquire "cron:dca-executor" (lease = interval - margin)     │
│                    │                                                          │
│                    ├── not acquired ──► Idle   (another instance's tick)     │
│                    ▼                                                          │
│                 Scanning: scanner.get_due_plans()                             │
│                    │                                                          │
│                    ├── empty ──► release ──► Idle                             │
│                    ▼                                                          │
│                 Executing: for plan in due (sequential, oldest first)         │
│                    │   engine.execute_plan(plan.id)                           │
│                    │     None     → skipped  (plan lock held elsewhere)       │
│                    │     Success  → executed                                  │
│                    │     Failed   → failed   (stays due, retried next tick)   │
│                    │     raises   → errored  (logged, batch continues)        │
│                    ▼                                                          │
│                 release ──► Idle                                              │
│                                                                               │
│   Public API:                                                                 │
│   ├── start() / stop()      backend tick loop                                 │
│   ├── tick()                one full tick (also used by the CLI)              │
│   ├── execute_now(plan_id)  manual trigger, still guarded by the plan lock    │
│   ├── health()              SchedulerHealth                                   │
│   └── get_stats()           SchedulerStats                                    │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from dcaspine.core.errors import InvalidConfigError
from dcaspine.core.logging import LogContext, get_logger
from dcaspine.core.models import ExecutionResult

from .engine import ExecutionEngine
from .lock_manager import LockManager
from .protocol import BackendHealth, SchedulerBackend
from .repository import PlanRepository
from .scanner import DuePlanScanner

logger = get_logger(__name__)

SCAN_LOCK_RESOURCE = "cron:dca-executor"


@dataclass
class SchedulerStats:
    """Statistics for scheduler service."""

    tick_count: int = 0
    ticks_skipped: int = 0
    plans_executed: int = 0
    plans_failed: int = 0
    plans_skipped: int = 0
    plans_errored: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick_count": self.tick_count,
            "ticks_skipped": self.ticks_skipped,
            "plans_executed": self.plans_executed,
            "plans_failed": self.plans_failed,
            "plans_skipped": self.plans_skipped,
            "plans_errored": self.plans_errored,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "last_error": self.last_error,
        }


@dataclass
class TickSummary:
    """What one tick did on this instance."""

    scan_lock_acquired: bool
    due: int = 0
    results: list[ExecutionResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errored: list[str] = field(default_factory=list)

    @property
    def executed(self) -> int:
        return sum(1 for r in self.results if r.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.succeeded)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scan_lock_acquired": self.scan_lock_acquired,
            "due": self.due,
            "executed": self.executed,
            "failed": self.failed,
            "skipped": len(self.skipped),
            "errored": len(self.errored),
        }


@dataclass
class SchedulerHealth:
    """Health status for scheduler service."""

    healthy: bool
    backend: BackendHealth | dict
    plans_active: int = 0
    scan_lock_holder: str | None = None
    last_tick: datetime | None = None
    stats: SchedulerStats = field(default_factory=SchedulerStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "backend": self.backend.to_dict() if isinstance(self.backend, BackendHealth) else self.backend,
            "plans_active": self.plans_active,
            "scan_lock_holder": self.scan_lock_holder,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "stats": self.stats.to_dict(),
        }


class SchedulerService:
    """Main scheduler orchestrator, beat-as-poller pattern.

    Example:
        >>> service = SchedulerService(
        ...     backend=ThreadSchedulerBackend(),
        ...     scanner=DuePlanScanner(repo),
        ...     engine=engine,
        ...     lock_manager=locks,
        ...     interval_seconds=60,
        ...     scan_lock_lease_seconds=55,
        ... )
        >>> service.start()
        >>> # Later...
        >>> service.stop()
    """

    def __init__(
        self,
        backend: SchedulerBackend,
        scanner: DuePlanScanner,
        engine: ExecutionEngine,
        lock_manager: LockManager,
        *,
        repository: PlanRepository | None = None,
        interval_seconds: float = 60.0,
        scan_lock_lease_seconds: int = 55,
    ) -> None:
        if interval_seconds <= 0:
            raise InvalidConfigError("interval_seconds", interval_seconds)
        if not 0 < scan_lock_lease_seconds < interval_seconds:
            raise InvalidConfigError(
                "scan_lock_lease_seconds",
                scan_lock_lease_seconds,
                f"Scan lock lease must be positive and shorter than the tick interval "
                f"({interval_seconds}s), got {scan_lock_lease_seconds}s",
            )
        self.backend = backend
        self.scanner = scanner
        self.engine = engine
        self.lock_manager = lock_manager
        self.repository = repository
        self.interval = interval_seconds
        self.scan_lock_lease_seconds = scan_lock_lease_seconds

        self._stats = SchedulerStats()
        self._running = False

    # === Lifecycle ===

    def start(self) -> None:
        """Begin the backend tick loop."""
        if self._running:
            logger.warning("scheduler_already_running")
            return

        logger.info(
            "scheduler_starting",
            backend=self.backend.name,
            interval_seconds=self.interval,
            scan_lock_lease_seconds=self.scan_lock_lease_seconds,
        )
        self.backend.start(self.tick, self.interval)
        self._running = True

    def stop(self) -> None:
        """Stop the backend; waits briefly for the in-flight tick."""
        if not self._running:
            return

        logger.info("scheduler_stopping")
        self.backend.stop()
        self._running = False
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # === Tick Processing ===

    async def tick(self) -> TickSummary:
        """Run one tick: scan lock, due-plan scan, sequential execution."""
        self._stats.tick_count += 1
        self._stats.last_tick = datetime.now(UTC)

        handle = await asyncio.to_thread(
            self.lock_manager.acquire, SCAN_LOCK_RESOURCE, self.scan_lock_lease_seconds
        )
        if handle is None:
            self._stats.ticks_skipped += 1
            logger.debug("tick_skipped_scan_lock_held")
            return TickSummary(scan_lock_acquired=False)

        summary = TickSummary(scan_lock_acquired=True)
        try:
            due = await asyncio.to_thread(self.scanner.get_due_plans)
            summary.due = len(due)
            if not due:
                logger.debug("no_plans_due")
                return summary

            logger.info("plans_due", count=len(due))
            for plan in due:
                await self._process_plan(plan.id, summary)

        except Exception as e:
            self._stats.last_error = str(e)
            logger.exception("tick_failed", error=str(e))
        finally:
            await asyncio.to_thread(handle.release)

        logger.info("tick_complete", **summary.to_dict())
        return summary

    async def _process_plan(self, plan_id: str, summary: TickSummary) -> None:
        """Execute one plan; contain every failure at this boundary."""
        with LogContext(plan_id=plan_id):
            try:
                result = await asyncio.to_thread(self.engine.execute_plan, plan_id)
            except Exception as e:
                self._stats.plans_errored += 1
                self._stats.last_error = str(e)
                summary.errored.append(plan_id)
                logger.exception("plan_execution_errored", error=str(e))
                return

            if result is None:
                self._stats.plans_skipped += 1
                summary.skipped.append(plan_id)
                return

            summary.results.append(result)
            if result.succeeded:
                self._stats.plans_executed += 1
            else:
                self._stats.plans_failed += 1
                logger.info(
                    "plan_execution_failed",
                    execution_number=result.execution_number,
                    reason=result.error_message,
                )

    # === Manual Operations ===

    async def execute_now(self, plan_id: str) -> ExecutionResult | None:
        """Run one step of ``plan_id`` immediately, outside the tick cadence.

        Still takes the per-plan lock, so it never races a scheduled run.

        Raises:
            PlanNotFoundError: If the plan does not exist
        """
        logger.info("manual_execution_requested", plan_id=plan_id)
        return await asyncio.to_thread(self.engine.execute_plan, plan_id)

    # === Health & Stats ===

    def health(self) -> SchedulerHealth:
        backend_health = self.backend.health()
        plans_active = self.repository.count_active() if self.repository is not None else 0

        return SchedulerHealth(
            healthy=self._running and backend_health.get("healthy", False),
            backend=backend_health,
            plans_active=plans_active,
            scan_lock_holder=self.lock_manager.get_lock_holder(SCAN_LOCK_RESOURCE),
            last_tick=self._stats.last_tick,
            stats=self._stats,
        )

    def get_stats(self) -> SchedulerStats:
        return self._stats

    def reset_stats(self) -> None:
        self._stats = SchedulerStats()
