"""SQLAlchemy 2.0 ORM layer for dcaspine.

Modules
-------
base        DcaBase (declarative base) + UTCDateTime
session     Engine factory, DcaSession, run_in_transaction
tables      PlanTable, ExecutionRecordTable, LockTable

Tags:
    dcaspine, orm, sqlalchemy, declarative

Doc-Types:
    package-overview, module-index
"""

from __future__ import annotations

from dcaspine.core.orm.base import DcaBase, UTCDateTime
from dcaspine.core.orm.session import (
    DcaSession,
    create_all,
    create_dca_engine,
    dca_session_factory,
    run_in_transaction,
)
from dcaspine.core.orm.tables import ExecutionRecordTable, LockTable, PlanTable

__all__ = [
    "DcaBase",
    "UTCDateTime",
    "DcaSession",
    "create_dca_engine",
    "dca_session_factory",
    "run_in_transaction",
    "create_all",
    "PlanTable",
    "ExecutionRecordTable",
    "LockTable",
]
