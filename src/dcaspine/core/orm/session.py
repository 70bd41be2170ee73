"""SQLAlchemy engine factory, session factory and transaction scoping.

Manifesto:
    The execution engine's read-modify-write of a plan's counters must be
    one atomic unit with a bounded lifetime. ``run_in_transaction`` is the
    single place that decides isolation level, how long to wait for
    database resources, and when to give up; everything else just passes
    a callable.

This module provides:

* ``create_dca_engine``      -- Create a SA engine with SQLite/PostgreSQL tweaks.
* ``dca_session_factory``    -- ``sessionmaker`` with ``expire_on_commit=False``.
* ``run_in_transaction``     -- Run ``fn(session)`` in one transaction with
  isolation level, max-wait and overall timeout.
* ``create_all``             -- Create the dcaspine tables.

Timeout mapping::

    max_wait_seconds  → pool checkout timeout
                        SQLite: PRAGMA busy_timeout (BEGIN IMMEDIATE waits this long)
                        PostgreSQL: SET LOCAL lock_timeout
    timeout_seconds   → PostgreSQL: SET LOCAL statement_timeout
                        all backends: deadline checked before COMMIT

Exceeding either rolls the transaction back and raises
``TransactionTimeoutError``; nothing is partially written.

Tags:
    dcaspine, orm, sqlalchemy, session, engine, transactions, timeouts

Doc-Types:
    api-reference
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from dcaspine.core.errors import DatabaseError, TransactionTimeoutError
from dcaspine.core.logging import get_logger
from dcaspine.core.orm.base import DcaBase

logger = get_logger(__name__)

T = TypeVar("T")

_TIMEOUT_MARKERS = ("database is locked", "lock timeout", "statement timeout", "canceling statement")


def create_dca_engine(
    url: str = "sqlite:///dca.db",
    *,
    echo: bool = False,
    pool_size: int | None = None,
    max_wait_seconds: float = 10.0,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine with sane defaults.

    SQLite connections run in driver-autocommit mode and every transaction
    starts with ``BEGIN IMMEDIATE``, which takes the database write lock up
    front. That makes SQLite transactions truly serializable and turns a
    concurrent writer into a bounded wait instead of a late failure.
    """
    if url.startswith("sqlite"):
        kwargs.setdefault(
            "connect_args", {"check_same_thread": False, "timeout": max_wait_seconds}
        )
        engine = _sa_create_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn: Any) -> None:
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    pool_kwargs: dict[str, Any] = {"pool_timeout": max_wait_seconds, "pool_pre_ping": True}
    if pool_size is not None:
        pool_kwargs["pool_size"] = pool_size
    return _sa_create_engine(url, echo=echo, **pool_kwargs, **kwargs)


class DcaSession(Session):
    """Session with ``expire_on_commit=False`` so results survive the commit."""

    def __init__(self, bind: Engine | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("expire_on_commit", False)
        super().__init__(bind=bind, **kwargs)


def dca_session_factory(engine: Engine) -> sessionmaker[DcaSession]:
    """Return a ``sessionmaker`` bound to *engine* that produces ``DcaSession`` instances."""
    return sessionmaker(bind=engine, class_=DcaSession)


def create_all(engine: Engine) -> None:
    """Create every dcaspine table that does not exist yet."""
    from dcaspine.core.orm import tables  # noqa: F401  (registers mappers)

    DcaBase.metadata.create_all(engine)


def _apply_timeouts(session: Session, max_wait_seconds: float, timeout_seconds: float) -> None:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        session.execute(text(f"SET LOCAL lock_timeout = {int(max_wait_seconds * 1000)}"))
        session.execute(text(f"SET LOCAL statement_timeout = {int(timeout_seconds * 1000)}"))
    elif dialect == "sqlite":
        session.execute(text(f"PRAGMA busy_timeout = {int(max_wait_seconds * 1000)}"))


def _is_timeout(error: sa_exc.OperationalError) -> bool:
    message = str(error.orig).lower() if error.orig is not None else str(error).lower()
    return any(marker in message for marker in _TIMEOUT_MARKERS)


def run_in_transaction(
    session_factory: Callable[[], Session],
    fn: Callable[[Session], T],
    *,
    isolation_level: str = "SERIALIZABLE",
    max_wait_seconds: float = 10.0,
    timeout_seconds: float = 30.0,
) -> T:
    """Run ``fn(session)`` inside one transaction and commit its result.

    Any exception from ``fn`` rolls back and propagates unchanged, except
    driver-level timeouts which surface as ``TransactionTimeoutError`` and
    other operational failures (serialization conflicts, dropped
    connections) which surface as a retryable ``DatabaseError``.
    """
    started = time.monotonic()
    with session_factory() as session:
        try:
            session.connection(execution_options={"isolation_level": isolation_level})
            _apply_timeouts(session, max_wait_seconds, timeout_seconds)

            result = fn(session)

            elapsed = time.monotonic() - started
            if elapsed > timeout_seconds:
                raise TransactionTimeoutError(
                    f"Transaction exceeded {timeout_seconds}s (took {elapsed:.2f}s)"
                )
            session.commit()
            return result
        except sa_exc.TimeoutError as e:
            session.rollback()
            raise TransactionTimeoutError(
                f"Timed out after {max_wait_seconds}s waiting for a database connection", cause=e
            ) from e
        except sa_exc.OperationalError as e:
            session.rollback()
            if _is_timeout(e):
                raise TransactionTimeoutError(f"Transaction timed out: {e.orig}", cause=e) from e
            logger.warning("transaction_operational_error", error=str(e.orig))
            raise DatabaseError(f"Transaction failed: {e.orig}", retryable=True, cause=e) from e
        except BaseException:
            session.rollback()
            raise
