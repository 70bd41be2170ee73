"""Plan repository - transactional plan and execution-history access.

Manifesto:
    The plan row is the only shared mutable state that matters for
    correctness. All writes to it, and the execution record that justifies
    each write, go through ``PlanTransaction`` inside one
    ``run_in_transaction`` scope. Reads that feed the scanner are plain,
    lock-free queries.

┌──────────────────────────────────────────────────────────────────────────────┐
│  PLAN REPOSITORY                                                              │
│                                                                               │
│   PlanRepository                                                              │
│   ├── run_in_transaction(fn) → fn(PlanTransaction)                            │
│   ├── find_due_plans(now, limit) → list[PlanRef]                              │
│   ├── create_plan(spec) → Plan                                                │
│   ├── get_plan(id) → Plan | None                                              │
│   ├── set_status(id, status) → Plan | None   (OPERATOR_TRANSITIONS only)     │
│   ├── list_executions(plan_id) → list[ExecutionRecord]                        │
│   └── count_active() → int                                                    │
│                                                                               │
│   PlanTransaction  (only valid inside run_in_transaction)                     │
│   ├── get_plan(id) → Plan | None                                              │
│   ├── update_plan(id, patch) → Plan                                           │
│   ├── find_execution_record(plan_id, n) → ExecutionRecord | None              │
│   ├── create_execution_record(record) → ExecutionRecord                       │
│   ├── update_execution_record(record) → ExecutionRecord                       │
│   └── reset_attempts(plan_id, n) → bool                                       │
│                                                                               │
│   Due predicate:                                                              │
│     status = ACTIVE AND next_execution_at <= now                              │
│     AND executions_completed < total_executions                               │
│     ORDER BY next_execution_at ASC LIMIT n                                    │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TypeVar
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session

from dcaspine.core.errors import (
    DuplicateExecutionError,
    InvalidStatusTransitionError,
    PlanNotFoundError,
)
from dcaspine.core.logging import get_logger
from dcaspine.core.models import (
    ExecutionRecord,
    ExecutionStatus,
    Interval,
    Plan,
    PlanPatch,
    PlanRef,
    PlanStatus,
)
from dcaspine.core.orm.session import run_in_transaction
from dcaspine.core.orm.tables import ExecutionRecordTable, PlanTable

logger = get_logger(__name__)

T = TypeVar("T")

# Status changes an operator may make; COMPLETED and CANCELLED are terminal
OPERATOR_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.ACTIVE: frozenset({PlanStatus.PAUSED, PlanStatus.CANCELLED}),
    PlanStatus.PAUSED: frozenset({PlanStatus.ACTIVE, PlanStatus.CANCELLED}),
}


# ---------------------------------------------------------------------------
# DTOs and row mapping
# ---------------------------------------------------------------------------


@dataclass
class PlanCreate:
    """DTO for creating a new plan."""

    owner_id: str
    deposit_asset: str
    target_asset: str
    amount_per_execution: int
    total_executions: int
    interval: Interval
    first_execution_at: datetime | None = None
    ledger_plan_id: str | None = None


def _plan_from_row(row: PlanTable) -> Plan:
    return Plan(
        id=row.id,
        owner_id=row.owner_id,
        deposit_asset=row.deposit_asset,
        target_asset=row.target_asset,
        amount_per_execution=int(row.amount_per_execution),
        total_executions=row.total_executions,
        executions_completed=row.executions_completed,
        interval=Interval(row.interval),
        next_execution_at=row.next_execution_at,
        status=PlanStatus(row.status),
        ledger_plan_id=row.ledger_plan_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _record_from_row(row: ExecutionRecordTable) -> ExecutionRecord:
    return ExecutionRecord(
        plan_id=row.plan_id,
        execution_number=row.execution_number,
        amount_in=int(row.amount_in),
        status=ExecutionStatus(row.status),
        amount_out=Decimal(row.amount_out) if row.amount_out is not None else None,
        price=Decimal(row.price) if row.price is not None else None,
        tx_hash=row.tx_hash,
        error_message=row.error_message,
        attempt_count=row.attempt_count,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _decimal_str(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


# ---------------------------------------------------------------------------
# Transaction-scoped operations
# ---------------------------------------------------------------------------


class PlanTransaction:
    """Plan and record operations bound to one open transaction."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _plan_row(self, plan_id: str) -> PlanTable | None:
        return self.session.get(PlanTable, plan_id)

    def _record_row(self, plan_id: str, execution_number: int) -> ExecutionRecordTable | None:
        return self.session.scalar(
            select(ExecutionRecordTable).where(
                ExecutionRecordTable.plan_id == plan_id,
                ExecutionRecordTable.execution_number == execution_number,
            )
        )

    def get_plan(self, plan_id: str) -> Plan | None:
        row = self._plan_row(plan_id)
        return _plan_from_row(row) if row else None

    def update_plan(self, plan_id: str, patch: PlanPatch) -> Plan:
        row = self._plan_row(plan_id)
        if row is None:
            raise PlanNotFoundError(plan_id)
        if patch.executions_completed is not None:
            row.executions_completed = patch.executions_completed
        if patch.next_execution_at is not None:
            row.next_execution_at = patch.next_execution_at
        if patch.status is not None:
            row.status = patch.status.value
        self.session.flush()
        return _plan_from_row(row)

    def find_execution_record(self, plan_id: str, execution_number: int) -> ExecutionRecord | None:
        row = self._record_row(plan_id, execution_number)
        return _record_from_row(row) if row else None

    def create_execution_record(self, record: ExecutionRecord) -> ExecutionRecord:
        """Insert the record for a new slot.

        Raises:
            DuplicateExecutionError: the slot already has a record
        """
        row = ExecutionRecordTable(
            id=str(uuid4()),
            plan_id=record.plan_id,
            execution_number=record.execution_number,
            amount_in=str(record.amount_in),
            amount_out=_decimal_str(record.amount_out),
            price=_decimal_str(record.price),
            tx_hash=record.tx_hash,
            status=record.status.value,
            error_message=record.error_message,
            attempt_count=record.attempt_count,
        )
        self.session.add(row)
        try:
            self.session.flush()
        except sa_exc.IntegrityError as e:
            raise DuplicateExecutionError(
                record.plan_id, record.execution_number, cause=e
            ) from e
        return _record_from_row(row)

    def update_execution_record(self, record: ExecutionRecord) -> ExecutionRecord:
        """Overwrite a Failed slot with the outcome of a retry attempt."""
        row = self._record_row(record.plan_id, record.execution_number)
        if row is None:
            raise PlanNotFoundError(record.plan_id)
        if row.status == ExecutionStatus.SUCCESS.value:
            raise DuplicateExecutionError(record.plan_id, record.execution_number)
        row.amount_in = str(record.amount_in)
        row.amount_out = _decimal_str(record.amount_out)
        row.price = _decimal_str(record.price)
        row.tx_hash = record.tx_hash
        row.status = record.status.value
        row.error_message = record.error_message
        row.attempt_count = record.attempt_count
        self.session.flush()
        return _record_from_row(row)

    def reset_attempts(self, plan_id: str, execution_number: int) -> bool:
        """Zero the attempt count of a Failed slot. Returns False if there is none."""
        row = self._record_row(plan_id, execution_number)
        if row is None or row.status != ExecutionStatus.FAILED.value:
            return False
        row.attempt_count = 0
        self.session.flush()
        return True


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PlanRepository:
    """Repository for plans and their execution history.

    Example:
        >>> repo = PlanRepository(session_factory)
        >>> due = repo.find_due_plans(datetime.now(UTC), limit=100)
        >>> repo.run_in_transaction(lambda tx: tx.get_plan(due[0].id))
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        isolation_level: str = "SERIALIZABLE",
        max_wait_seconds: float = 10.0,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.session_factory = session_factory
        self.isolation_level = isolation_level
        self.max_wait_seconds = max_wait_seconds
        self.timeout_seconds = timeout_seconds

    def run_in_transaction(
        self,
        fn: Callable[[PlanTransaction], T],
        *,
        isolation_level: str | None = None,
        max_wait_seconds: float | None = None,
        timeout_seconds: float | None = None,
    ) -> T:
        """Run ``fn`` against a ``PlanTransaction``; commit on return, roll back on raise."""
        return run_in_transaction(
            self.session_factory,
            lambda session: fn(PlanTransaction(session)),
            isolation_level=isolation_level or self.isolation_level,
            max_wait_seconds=max_wait_seconds if max_wait_seconds is not None else self.max_wait_seconds,
            timeout_seconds=timeout_seconds if timeout_seconds is not None else self.timeout_seconds,
        )

    # === Scanning ===

    def find_due_plans(self, now: datetime, limit: int = 100) -> list[PlanRef]:
        """Active plans whose next execution is due, oldest-due first."""
        stmt = (
            select(PlanTable.id, PlanTable.owner_id, PlanTable.next_execution_at)
            .where(
                PlanTable.status == PlanStatus.ACTIVE.value,
                PlanTable.next_execution_at <= now,
                PlanTable.executions_completed < PlanTable.total_executions,
            )
            .order_by(PlanTable.next_execution_at.asc(), PlanTable.id.asc())
            .limit(limit)
        )
        with self.session_factory() as session:
            rows = session.execute(stmt).all()
        return [
            PlanRef(id=row.id, owner_id=row.owner_id, next_execution_at=row.next_execution_at)
            for row in rows
        ]

    # === Plan CRUD ===

    def create_plan(self, spec: PlanCreate) -> Plan:
        """Create a new ACTIVE plan.

        The first execution is due one interval from now unless
        ``first_execution_at`` is given.
        """
        if spec.amount_per_execution <= 0:
            raise ValueError("amount_per_execution must be positive")
        if spec.total_executions <= 0:
            raise ValueError("total_executions must be positive")

        next_at = spec.first_execution_at or self.compute_next_execution(
            datetime.now(UTC), spec.interval
        )
        row = PlanTable(
            id=str(uuid4()),
            owner_id=spec.owner_id,
            deposit_asset=spec.deposit_asset,
            target_asset=spec.target_asset,
            amount_per_execution=str(spec.amount_per_execution),
            total_executions=spec.total_executions,
            executions_completed=0,
            interval=spec.interval.value,
            next_execution_at=next_at,
            status=PlanStatus.ACTIVE.value,
            ledger_plan_id=spec.ledger_plan_id,
        )
        with self.session_factory() as session:
            session.add(row)
            session.commit()
            plan = _plan_from_row(row)
        logger.info("plan_created", plan_id=plan.id, owner_id=plan.owner_id)
        return plan

    def get_plan(self, plan_id: str) -> Plan | None:
        with self.session_factory() as session:
            row = session.get(PlanTable, plan_id)
            return _plan_from_row(row) if row else None

    def set_status(self, plan_id: str, status: PlanStatus) -> Plan | None:
        """Operator status change (pause, resume, cancel).

        Runs in its own transaction so it serializes with engine commits.
        Resuming clears the attempt count of the pending slot's Failed
        record, giving the plan a fresh retry budget.

        Returns:
            The updated plan, or None if it does not exist.

        Raises:
            InvalidStatusTransitionError: the change is not in
                ``OPERATOR_TRANSITIONS`` (e.g. anything out of COMPLETED)
        """

        def change(tx: PlanTransaction) -> Plan | None:
            plan = tx.get_plan(plan_id)
            if plan is None:
                return None
            if status not in OPERATOR_TRANSITIONS.get(plan.status, ()):
                raise InvalidStatusTransitionError(plan_id, plan.status.value, status.value)
            if status == PlanStatus.ACTIVE:
                tx.reset_attempts(plan_id, plan.next_execution_number)
            return tx.update_plan(plan_id, PlanPatch(status=status))

        plan = self.run_in_transaction(change)
        if plan is not None:
            logger.info("plan_status_changed", plan_id=plan_id, status=status.value)
        return plan

    def list_executions(self, plan_id: str) -> list[ExecutionRecord]:
        with self.session_factory() as session:
            rows = session.scalars(
                select(ExecutionRecordTable)
                .where(ExecutionRecordTable.plan_id == plan_id)
                .order_by(ExecutionRecordTable.execution_number.asc())
            ).all()
            return [_record_from_row(row) for row in rows]

    def count_active(self) -> int:
        with self.session_factory() as session:
            return session.scalar(
                select(func.count()).select_from(PlanTable).where(
                    PlanTable.status == PlanStatus.ACTIVE.value
                )
            ) or 0

    @staticmethod
    def compute_next_execution(from_: datetime, interval: Interval) -> datetime:
        return from_ + interval.duration
