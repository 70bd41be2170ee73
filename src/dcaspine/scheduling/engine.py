"""Execution engine - runs one step of one plan, exactly once.

Manifesto:
    A plan step moves money. It must happen at most once per
    ``(plan_id, execution_number)`` slot no matter how many scheduler
    instances, duplicate ticks or crash-restarts touch the plan. Three
    layers enforce that:

    1. the per-plan distributed lock (cross-instance exclusion)
    2. one serializable transaction for the read-modify-write of counters
    3. the unique ``(plan_id, execution_number)`` record as idempotency anchor

Algorithm::

    execute_plan(plan_id)
        │  lock "dca-execution:<plan_id>"        not acquired → None
        ▼
    ┌─ transaction ─────────────────────────────────────────────────────────┐
    │ plan = get_plan(id)                      missing → PlanNotFoundError   │
    │ status != ACTIVE                         → Failed "Plan not active"    │
    │ completed >= total                       → Failed "All executions      │
    │                                                     completed"         │
    │ not yet due and last slot recorded       → replay last record          │
    │ n = completed + 1                                                      │
    │ record(n) exists                                                       │
    │   SUCCESS                                → replay                      │
    │   FAILED, younger than cooldown          → replay                      │
    │   FAILED, older                          → retry slot n in place       │
    │ price = oracle(target/deposit)           fail → Failed record(n)       │
    │ amount_out = floor(amount_in / price)                                  │
    │ tx_hash = ledger.submit(...)             fail → Failed record(n)       │
    │ Success record(n); completed = n;                                      │
    │ next_at = now + interval; COMPLETED if n == total                      │
    └───────────────────────────────────────────────────────────────────────┘
        │  commit
        ▼
    side effects (fire-and-forget): cache invalidation, notification
        │
        ▼
    release lock → ExecutionResult

Failure handling:
    Pricing and ledger failures are business outcomes: the Failed record
    is committed, counters stay put, and the plan stays due. When the same
    slot has failed ``max_attempts`` times the plan is PAUSED in the same
    transaction. Repository timeouts and unexpected errors propagate to
    the caller with nothing written.

Tags:
    dcaspine, scheduling, execution, idempotency, transactions, locks

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from dcaspine.core.errors import DuplicateExecutionError, PlanNotFoundError, PriceUnavailableError
from dcaspine.core.logging import LogContext, get_logger
from dcaspine.core.models import (
    ExecutionRecord,
    ExecutionResult,
    ExecutionStatus,
    Plan,
    PlanPatch,
    PlanStatus,
)
from dcaspine.core.money import compute_amount_out
from dcaspine.ledger.client import LedgerClient
from dcaspine.notifications.notifier import EventKind, ExecutionEvent
from dcaspine.pricing.oracle import CachedPriceOracle

from .lock_manager import LockManager
from .repository import PlanRepository, PlanTransaction
from .side_effects import SideEffectDispatcher

logger = get_logger(__name__)

EXECUTION_LOCK_PREFIX = "dca-execution:"

NOT_ACTIVE = "Plan not active"
ALL_COMPLETED = "All executions completed"


def execution_lock_resource(plan_id: str) -> str:
    return f"{EXECUTION_LOCK_PREFIX}{plan_id}"


@dataclass
class _Outcome:
    result: ExecutionResult
    plan: Plan
    changed: bool = False
    event: ExecutionEvent | None = None


class ExecutionEngine:
    """Executes due plan steps under a per-plan lock.

    Example:
        >>> engine = ExecutionEngine(repo, locks, oracle, ledger, side_effects)
        >>> result = engine.execute_plan("plan-1")
        >>> if result is None:
        ...     print("another instance is executing this plan")
        ... elif result.succeeded:
        ...     print(result.execution_number, result.amount_out, result.tx_hash)
    """

    def __init__(
        self,
        repository: PlanRepository,
        lock_manager: LockManager,
        price_oracle: CachedPriceOracle,
        ledger: LedgerClient,
        side_effects: SideEffectDispatcher | None = None,
        *,
        lock_lease_seconds: int = 45,
        deposit_decimals: int = 6,
        amount_out_decimals: int = 8,
        retry_cooldown_seconds: int = 30,
        max_attempts: int = 10,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.lock_manager = lock_manager
        self.price_oracle = price_oracle
        self.ledger = ledger
        self.side_effects = side_effects
        self.lock_lease_seconds = lock_lease_seconds
        self.deposit_decimals = deposit_decimals
        self.amount_out_decimals = amount_out_decimals
        self.retry_cooldown = timedelta(seconds=retry_cooldown_seconds)
        self.max_attempts = max_attempts
        self._clock = clock or (lambda: datetime.now(UTC))

    # === Public API ===

    def execute_plan(self, plan_id: str) -> ExecutionResult | None:
        """Execute the next step of ``plan_id``.

        Returns:
            ExecutionResult (Success or Failed), or None if another holder
            has the plan's lock.

        Raises:
            PlanNotFoundError: no such plan
            TransactionTimeoutError: the transaction ran out of time
            DatabaseError: the transaction failed; nothing was written
        """
        handle = self.lock_manager.acquire(
            execution_lock_resource(plan_id), self.lock_lease_seconds
        )
        if handle is None:
            logger.info("execution_lock_held", plan_id=plan_id)
            return None

        try:
            with LogContext(plan_id=plan_id):
                outcome = self._execute_locked(plan_id)
        finally:
            handle.release()

        self._dispatch(outcome)
        return outcome.result

    # === Transaction ===

    def _execute_locked(self, plan_id: str) -> _Outcome:
        try:
            return self.repository.run_in_transaction(
                lambda tx: self._execute_in_transaction(tx, plan_id)
            )
        except DuplicateExecutionError as e:
            # Another writer committed this slot first; report what it stored
            logger.warning(
                "execution_slot_taken", execution_number=e.execution_number
            )
            return self.repository.run_in_transaction(
                lambda tx: self._replay_slot(tx, plan_id, e.execution_number)
            )

    def _replay_slot(self, tx: PlanTransaction, plan_id: str, execution_number: int) -> _Outcome:
        plan = tx.get_plan(plan_id)
        record = tx.find_execution_record(plan_id, execution_number)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        if record is None:
            raise DuplicateExecutionError(plan_id, execution_number)
        return _Outcome(ExecutionResult.from_record(record, replayed=True), plan)

    def _execute_in_transaction(self, tx: PlanTransaction, plan_id: str) -> _Outcome:
        now = self._clock()
        plan = tx.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)

        if plan.status != PlanStatus.ACTIVE:
            logger.info("execution_skipped_not_active", status=plan.status.value)
            return _Outcome(self._short_circuit(plan, plan.next_execution_number, NOT_ACTIVE), plan)

        if plan.executions_completed >= plan.total_executions:
            logger.warning("execution_skipped_all_completed", completed=plan.executions_completed)
            return _Outcome(
                self._short_circuit(plan, plan.executions_completed, ALL_COMPLETED), plan
            )

        # A duplicate tick after a successful step finds the plan not yet due
        if plan.next_execution_at > now and plan.executions_completed > 0:
            last = tx.find_execution_record(plan.id, plan.executions_completed)
            if last is not None:
                logger.info("execution_not_due_replayed", execution_number=last.execution_number)
                return _Outcome(ExecutionResult.from_record(last, replayed=True), plan)

        execution_number = plan.next_execution_number
        existing = tx.find_execution_record(plan.id, execution_number)
        attempt = 1
        if existing is not None:
            if existing.status == ExecutionStatus.SUCCESS or self._in_cooldown(existing, now):
                logger.info(
                    "execution_replayed",
                    execution_number=execution_number,
                    status=existing.status.value,
                )
                return _Outcome(ExecutionResult.from_record(existing, replayed=True), plan)
            attempt = existing.attempt_count + 1
            logger.info("execution_retrying_slot", execution_number=execution_number, attempt=attempt)

        amount_in = plan.amount_per_execution
        pair = f"{plan.target_asset}/{plan.deposit_asset}"

        try:
            quote = self.price_oracle.get_current_price(pair)
        except PriceUnavailableError as e:
            return self._record_failure(
                tx, plan, existing, execution_number, attempt, amount_in,
                error=f"Failed to fetch price: {e.message}",
            )

        amount_out = compute_amount_out(
            amount_in,
            quote.price,
            deposit_decimals=self.deposit_decimals,
            out_decimals=self.amount_out_decimals,
        )

        try:
            tx_hash = self.ledger.submit(plan, execution_number, amount_in, amount_out)
        except Exception as e:
            return self._record_failure(
                tx, plan, existing, execution_number, attempt, amount_in,
                error=f"Ledger write failed: {e}",
                price=quote.price,
                amount_out=amount_out,
            )

        record = ExecutionRecord(
            plan_id=plan.id,
            execution_number=execution_number,
            amount_in=amount_in,
            status=ExecutionStatus.SUCCESS,
            amount_out=amount_out,
            price=quote.price,
            tx_hash=tx_hash,
            attempt_count=attempt,
        )
        record = self._save(tx, existing, record)

        is_final = execution_number >= plan.total_executions
        updated = tx.update_plan(
            plan.id,
            PlanPatch(
                executions_completed=execution_number,
                next_execution_at=self.repository.compute_next_execution(now, plan.interval),
                status=PlanStatus.COMPLETED if is_final else PlanStatus.ACTIVE,
            ),
        )
        logger.info(
            "execution_succeeded",
            execution_number=execution_number,
            amount_in=str(amount_in),
            amount_out=str(amount_out),
            price=str(quote.price),
            price_source=quote.source,
            tx_hash=tx_hash,
            final=is_final,
        )
        kind = EventKind.COMPLETED if is_final else EventKind.EXECUTED
        return _Outcome(
            ExecutionResult.from_record(record),
            updated,
            changed=True,
            event=self._event(kind, updated, record),
        )

    def _record_failure(
        self,
        tx: PlanTransaction,
        plan: Plan,
        existing: ExecutionRecord | None,
        execution_number: int,
        attempt: int,
        amount_in: int,
        *,
        error: str,
        price: Decimal | None = None,
        amount_out: Decimal | None = None,
    ) -> _Outcome:
        record = ExecutionRecord(
            plan_id=plan.id,
            execution_number=execution_number,
            amount_in=amount_in,
            status=ExecutionStatus.FAILED,
            amount_out=amount_out,
            price=price,
            error_message=error,
            attempt_count=attempt,
        )
        record = self._save(tx, existing, record)
        logger.warning(
            "execution_failed", execution_number=execution_number, attempt=attempt, error=error
        )

        kind = EventKind.FAILED
        if self.max_attempts and attempt >= self.max_attempts:
            plan = tx.update_plan(plan.id, PlanPatch(status=PlanStatus.PAUSED))
            kind = EventKind.PAUSED
            logger.error(
                "plan_paused_retries_exhausted",
                execution_number=execution_number,
                attempts=attempt,
            )
        return _Outcome(
            ExecutionResult.from_record(record),
            plan,
            changed=True,
            event=self._event(kind, plan, record),
        )

    # === Helpers ===

    def _in_cooldown(self, record: ExecutionRecord, now: datetime) -> bool:
        stamp = record.updated_at or record.created_at
        return stamp is not None and now - stamp < self.retry_cooldown

    @staticmethod
    def _save(
        tx: PlanTransaction, existing: ExecutionRecord | None, record: ExecutionRecord
    ) -> ExecutionRecord:
        if existing is None:
            return tx.create_execution_record(record)
        return tx.update_execution_record(record)

    @staticmethod
    def _short_circuit(plan: Plan, execution_number: int, reason: str) -> ExecutionResult:
        return ExecutionResult(
            plan_id=plan.id,
            execution_number=execution_number,
            status=ExecutionStatus.FAILED,
            amount_in=plan.amount_per_execution,
            error_message=reason,
        )

    @staticmethod
    def _event(kind: EventKind, plan: Plan, record: ExecutionRecord) -> ExecutionEvent:
        return ExecutionEvent(
            kind=kind,
            plan_id=plan.id,
            owner_id=plan.owner_id,
            execution_number=record.execution_number,
            total_executions=plan.total_executions,
            interval=plan.interval.value,
            amount_in=record.amount_in,
            amount_out=record.amount_out,
            price=record.price,
            tx_hash=record.tx_hash,
            error=record.error_message,
        )

    def _dispatch(self, outcome: _Outcome) -> None:
        if self.side_effects is None or not outcome.changed:
            return
        self.side_effects.invalidate_plan(outcome.plan.id, outcome.plan.owner_id)
        if outcome.event is not None:
            self.side_effects.notify(outcome.event)
