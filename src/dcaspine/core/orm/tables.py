"""Plan, execution-history and lock table definitions.

Amounts and prices are stored as ``Text`` holding the exact decimal/integer
string, so no backend ever round-trips money through a float column.

Tags:
    dcaspine, orm, sqlalchemy, tables

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

import datetime

from sqlalchemy import ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dcaspine.core.orm.base import DcaBase, UTCDateTime


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class PlanTable(DcaBase):
    __tablename__ = "dca_plans"
    __table_args__ = (
        Index("ix_dca_plans_due", "status", "next_execution_at"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    owner_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    deposit_asset: Mapped[str] = mapped_column(Text, nullable=False)
    target_asset: Mapped[str] = mapped_column(Text, nullable=False)
    amount_per_execution: Mapped[str] = mapped_column(Text, nullable=False)
    total_executions: Mapped[int] = mapped_column(Integer, nullable=False)
    executions_completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    interval: Mapped[str] = mapped_column(Text, nullable=False)
    next_execution_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(Text, default="ACTIVE", nullable=False)
    ledger_plan_id: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    executions: Mapped[list[ExecutionRecordTable]] = relationship(
        "ExecutionRecordTable", back_populates="plan"
    )


class ExecutionRecordTable(DcaBase):
    __tablename__ = "dca_execution_history"
    __table_args__ = (
        UniqueConstraint("plan_id", "execution_number", name="uq_execution_slot"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    plan_id: Mapped[str] = mapped_column(Text, ForeignKey("dca_plans.id"), nullable=False)
    execution_number: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_in: Mapped[str] = mapped_column(Text, nullable=False)
    amount_out: Mapped[str | None] = mapped_column(Text)
    price: Mapped[str | None] = mapped_column(Text)
    tx_hash: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    attempt_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    plan: Mapped[PlanTable] = relationship("PlanTable", back_populates="executions")


class LockTable(DcaBase):
    __tablename__ = "dca_locks"

    resource: Mapped[str] = mapped_column(Text, primary_key=True)
    owner_token: Mapped[str] = mapped_column(Text, nullable=False)
    acquired_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)
