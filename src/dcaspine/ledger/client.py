"""Settlement ledger client.

The ledger write is the one costly, rate-limited external call in an
execution. ``submit`` returns the ledger's transaction reference or raises
``LedgerError``; it is never retried here. A failed submit becomes a Failed
execution record and the plan is picked up again on a later tick.

Tags:
    dcaspine, ledger, settlement

Doc-Types:
    api-reference
"""

from __future__ import annotations

import secrets
from decimal import Decimal
from typing import Protocol

from dcaspine.core.errors import LedgerError
from dcaspine.core.logging import get_logger
from dcaspine.core.models import Plan

logger = get_logger(__name__)


class LedgerClient(Protocol):
    """Submits one purchase to the settlement ledger."""

    def submit(
        self,
        plan: Plan,
        execution_number: int,
        amount_in: int,
        amount_out: Decimal,
    ) -> str:
        """Return the transaction reference, or raise ``LedgerError``."""
        ...


class SimulatedLedgerClient:
    """Ledger stand-in that returns a random ``0x`` transaction hash.

    Set ``fail_with`` to make every submit raise ``LedgerError`` with that
    message (useful for exercising the failure path from the CLI).
    """

    def __init__(self, *, fail_with: str | None = None) -> None:
        self.fail_with = fail_with
        self.submitted: list[tuple[str, int, int, Decimal, str]] = []

    def submit(
        self,
        plan: Plan,
        execution_number: int,
        amount_in: int,
        amount_out: Decimal,
    ) -> str:
        if self.fail_with:
            raise LedgerError(self.fail_with).with_context(
                plan_id=plan.id, execution_number=execution_number
            )
        tx_hash = "0x" + secrets.token_hex(32)
        self.submitted.append((plan.id, execution_number, amount_in, amount_out, tx_hash))
        logger.info(
            "ledger_submitted",
            plan_id=plan.id,
            execution_number=execution_number,
            amount_in=str(amount_in),
            amount_out=str(amount_out),
            tx_hash=tx_hash,
        )
        return tx_hash
