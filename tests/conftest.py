"""
Shared pytest fixtures for dcaspine tests.

This module provides:
- A file-backed SQLite database per test (``tmp_path``) with all tables
- Repository, lock manager and execution engine wired to that database
- Stub collaborators: price source, ledger, notifier, in-memory lock store
- ``make_plan`` factory for plans in any state

Usage:
    def test_something(engine, make_plan):
        plan = make_plan(executions_completed=3)
        result = engine.execute_plan(plan.id)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest

from dcaspine.core.cache import InMemoryCache
from dcaspine.core.errors import LedgerError
from dcaspine.core.logging import configure_logging
from dcaspine.core.models import Interval, Plan, PlanPatch, PlanStatus
from dcaspine.core.orm.session import create_all, create_dca_engine, dca_session_factory
from dcaspine.notifications.notifier import ExecutionEvent
from dcaspine.pricing.oracle import CachedPriceOracle
from dcaspine.scheduling.engine import ExecutionEngine
from dcaspine.scheduling.lock_manager import LockManager
from dcaspine.scheduling.repository import PlanCreate, PlanRepository
from dcaspine.scheduling.side_effects import SideEffectDispatcher


# =============================================================================
# Test doubles
# =============================================================================


class MemoryLockStore:
    """Thread-safe in-process lock store with real expiry semantics."""

    def __init__(self) -> None:
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def set_if_absent(self, key: str, token: str, ttl_seconds: int) -> bool:
        with self._lock:
            current = self._data.get(key)
            if current is not None and current[1] > time.monotonic():
                return False
            self._data[key] = (token, time.monotonic() + ttl_seconds)
            return True

    def compare_and_delete(self, key: str, token: str) -> bool:
        with self._lock:
            current = self._data.get(key)
            if current is None or current[0] != token:
                return False
            del self._data[key]
            return True

    def get(self, key: str) -> str | None:
        with self._lock:
            current = self._data.get(key)
            if current is None or current[1] <= time.monotonic():
                return None
            return current[0]

    def expire(self, key: str) -> None:
        """Force the lease on ``key`` to run out."""
        with self._lock:
            token, _ = self._data[key]
            self._data[key] = (token, time.monotonic() - 1)


class StubPriceSource:
    name = "stub"

    def __init__(self, price: Decimal = Decimal("65000")) -> None:
        self.price = price
        self.fail = False
        self.calls: list[tuple[str, str]] = []

    def fetch_price(self, base: str, quote: str) -> Decimal:
        self.calls.append((base, quote))
        if self.fail:
            raise ConnectionError("price API down")
        return self.price


class StubLedger:
    def __init__(self) -> None:
        self.fail_with: str | None = None
        self.submitted: list[tuple[str, int, int, Decimal]] = []
        self.on_submit: Callable[[], None] | None = None

    def submit(self, plan: Plan, execution_number: int, amount_in: int, amount_out: Decimal) -> str:
        if self.on_submit is not None:
            self.on_submit()
        if self.fail_with:
            raise LedgerError(self.fail_with)
        self.submitted.append((plan.id, execution_number, amount_in, amount_out))
        return f"0x{len(self.submitted):064x}"


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[ExecutionEvent] = []
        self.fail = False

    def notify(self, event: ExecutionEvent) -> None:
        if self.fail:
            raise RuntimeError("smtp down")
        self.events.append(event)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine(tmp_path):
    """SQLite file database with every dcaspine table."""
    engine = create_dca_engine(f"sqlite:///{tmp_path / 'dca.db'}", max_wait_seconds=5)
    create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return dca_session_factory(db_engine)


@pytest.fixture
def repository(session_factory) -> PlanRepository:
    return PlanRepository(session_factory, max_wait_seconds=5, timeout_seconds=30)


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def lock_store() -> MemoryLockStore:
    return MemoryLockStore()


@pytest.fixture
def lock_manager(lock_store) -> LockManager:
    return LockManager(lock_store, instance_id="test-instance")


@pytest.fixture
def price_source() -> StubPriceSource:
    return StubPriceSource()


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def oracle(price_source, cache) -> CachedPriceOracle:
    return CachedPriceOracle(price_source, cache, ttl_seconds=60)


@pytest.fixture
def ledger() -> StubLedger:
    return StubLedger()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def side_effects(cache, notifier) -> Iterator[SideEffectDispatcher]:
    dispatcher = SideEffectDispatcher(cache, notifier)
    yield dispatcher
    dispatcher.shutdown(wait=True)


@pytest.fixture
def make_engine(repository, lock_manager, oracle, ledger, side_effects):
    """Build an ExecutionEngine with optional overrides."""

    def _make(**kwargs: Any) -> ExecutionEngine:
        options: dict[str, Any] = {
            "lock_lease_seconds": 45,
            "retry_cooldown_seconds": 30,
            "max_attempts": 3,
        }
        options.update(kwargs)
        return ExecutionEngine(repository, lock_manager, oracle, ledger, side_effects, **options)

    return _make


@pytest.fixture
def engine(make_engine) -> ExecutionEngine:
    return make_engine()


# =============================================================================
# Plans
# =============================================================================


@pytest.fixture
def make_plan(repository):
    """Create a plan that is due now; override any field."""

    def _make(
        *,
        owner_id: str = "owner-1",
        amount_per_execution: int = 100_000_000,
        total_executions: int = 12,
        executions_completed: int = 0,
        interval: Interval = Interval.WEEKLY,
        status: PlanStatus = PlanStatus.ACTIVE,
        due_at: datetime | None = None,
    ) -> Plan:
        plan = repository.create_plan(
            PlanCreate(
                owner_id=owner_id,
                deposit_asset="USDC",
                target_asset="BTC",
                amount_per_execution=amount_per_execution,
                total_executions=total_executions,
                interval=interval,
                first_execution_at=due_at or datetime.now(UTC) - timedelta(minutes=1),
            )
        )
        if executions_completed:
            repository.run_in_transaction(
                lambda tx: tx.update_plan(
                    plan.id, PlanPatch(executions_completed=executions_completed)
                )
            )
        if status != PlanStatus.ACTIVE:
            repository.run_in_transaction(
                lambda tx: tx.update_plan(plan.id, PlanPatch(status=status))
            )
        return repository.get_plan(plan.id)

    return _make


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _console_logging() -> None:
    """Configure structlog before any module logger is first used."""
    configure_logging(level="INFO", json_format=False)
