"""Plan and execution-history models.

Manifesto:
    The execution engine, the repository and the notifier all pass the
    same few shapes around. Typed dataclasses keep money as ``int`` /
    ``Decimal`` end to end, never ``float``.

Amounts:
    - ``amount_per_execution`` / ``amount_in`` are integers in the deposit
      asset's smallest unit (no implicit decimals).
    - ``amount_out`` and ``price`` are ``Decimal``.

Tags:
    dcaspine, models, dataclasses, plans, execution-history

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any


class PlanStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class ExecutionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class Interval(str, Enum):
    """Plan recurrence, each mapped to a fixed duration."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"

    @property
    def duration(self) -> timedelta:
        return INTERVAL_DURATIONS[self]


INTERVAL_DURATIONS: dict[Interval, timedelta] = {
    Interval.DAILY: timedelta(days=1),
    Interval.WEEKLY: timedelta(days=7),
    Interval.BIWEEKLY: timedelta(days=14),
    Interval.MONTHLY: timedelta(days=30),
}


# ---------------------------------------------------------------------------
# dca_plans
# ---------------------------------------------------------------------------


@dataclass
class Plan:
    """Recurring purchase commitment (``dca_plans``)."""

    id: str
    owner_id: str
    deposit_asset: str
    target_asset: str
    amount_per_execution: int
    total_executions: int
    interval: Interval
    next_execution_at: datetime
    executions_completed: int = 0
    status: PlanStatus = PlanStatus.ACTIVE
    ledger_plan_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def next_execution_number(self) -> int:
        return self.executions_completed + 1

    @property
    def remaining_executions(self) -> int:
        return self.total_executions - self.executions_completed


@dataclass
class PlanRef:
    """Lightweight row returned by the due-plan scan."""

    id: str
    owner_id: str
    next_execution_at: datetime


@dataclass
class PlanPatch:
    """Fields the execution engine may change on a plan, all together."""

    executions_completed: int | None = None
    next_execution_at: datetime | None = None
    status: PlanStatus | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


# ---------------------------------------------------------------------------
# dca_execution_history
# ---------------------------------------------------------------------------


@dataclass
class ExecutionRecord:
    """One execution slot of a plan; ``(plan_id, execution_number)`` is unique."""

    plan_id: str
    execution_number: int
    amount_in: int
    status: ExecutionStatus
    amount_out: Decimal | None = None
    price: Decimal | None = None
    tx_hash: str | None = None
    error_message: str | None = None
    attempt_count: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ExecutionResult:
    """Outcome of one ``ExecutionEngine.execute_plan`` call."""

    plan_id: str
    execution_number: int
    status: ExecutionStatus
    amount_in: int
    amount_out: Decimal | None = None
    price: Decimal | None = None
    tx_hash: str | None = None
    error_message: str | None = None
    # True when an already-recorded outcome was returned without writes
    replayed: bool = field(default=False, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    @classmethod
    def from_record(cls, record: ExecutionRecord, *, replayed: bool = False) -> ExecutionResult:
        return cls(
            plan_id=record.plan_id,
            execution_number=record.execution_number,
            status=record.status,
            amount_in=record.amount_in,
            amount_out=record.amount_out,
            price=record.price,
            tx_hash=record.tx_hash,
            error_message=record.error_message,
            replayed=replayed,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "execution_number": self.execution_number,
            "status": self.status.value,
            "amount_in": str(self.amount_in),
            "amount_out": str(self.amount_out) if self.amount_out is not None else None,
            "price": str(self.price) if self.price is not None else None,
            "tx_hash": self.tx_hash,
            "error_message": self.error_message,
            "replayed": self.replayed,
        }
