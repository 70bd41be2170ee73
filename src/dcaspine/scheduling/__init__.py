"""Distributed DCA execution scheduler.

Manifesto:
    Executing recurring purchases from several horizontally-scaled service
    instances needs more than a timer. It needs a cluster-wide scan lock
    (so one instance scans per tick), a per-plan lock plus a serializable
    transaction (so a plan step never runs twice), and an idempotency anchor
    on ``(plan_id, execution_number)`` (so crashes and duplicate ticks replay
    instead of re-executing).

┌──────────────────────────────────────────────────────────────────────────────┐
│  DCA SCHEDULER                                                                │
│                                                                               │
│  Quick Start:                                                                 │
│  ┌──────────────────────────────────────────────────────────────────────┐   │
│  │   from dcaspine.core.settings import get_settings                    │   │
│  │   from dcaspine.scheduling import create_scheduler                   │   │
│  │                                                                      │   │
│  │   service = create_scheduler(get_settings())                         │   │
│  │   service.start()                                                    │   │
│  └──────────────────────────────────────────────────────────────────────┘   │
│                                                                               │
│  Architecture:                                                                │
│                                                                               │
│   ┌──────────────┐    tick()    ┌──────────────────────────────────────┐     │
│   │  Backend     │ ───────────► │   SchedulerService                   │     │
│   │ (timing)     │              │     scan lock  (LockManager)         │     │
│   └──────────────┘              │     DuePlanScanner ─► PlanRepository │     │
│                                 │     ExecutionEngine                  │     │
│                                 │       ├── plan lock (LockManager)    │     │
│                                 │       ├── CachedPriceOracle          │     │
│                                 │       ├── LedgerClient               │     │
│                                 │       └── SideEffectDispatcher       │     │
│                                 └──────────────────────────────────────┘     │
│                                                                               │
│  Tables: dca_plans, dca_execution_history, dca_locks                         │
└──────────────────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ Executing a plan without its per-plan lock
    ✅ ``ExecutionEngine.execute_plan`` acquires it itself
    ❌ Constructing scheduler components individually in application code
    ✅ ``create_scheduler(settings)`` factory function

Tags:
    dcaspine, scheduling, distributed-locks, idempotency, beat-as-poller

Doc-Types:
    package-overview, architecture-map, module-index
"""

from __future__ import annotations

from collections.abc import Callable

from sqlalchemy.orm import Session

from dcaspine.core.cache import CacheBackend, InMemoryCache, RedisCache
from dcaspine.core.logging import get_logger
from dcaspine.core.orm.session import create_dca_engine, dca_session_factory
from dcaspine.core.settings import DcaSettings
from dcaspine.ledger.client import LedgerClient, SimulatedLedgerClient
from dcaspine.notifications.notifier import EmailEndpointNotifier, LogNotifier, Notifier
from dcaspine.pricing.oracle import CachedPriceOracle, CoinGeckoPriceSource, PriceSource

# Engine
from .engine import EXECUTION_LOCK_PREFIX, ExecutionEngine, execution_lock_resource

# Lock Manager
from .lock_manager import LockHandle, LockManager
from .lock_store import DatabaseLockStore, LockStore, RedisLockStore

# Protocol
from .protocol import BackendHealth, SchedulerBackend

# Repository
from .repository import PlanCreate, PlanRepository, PlanTransaction
from .scanner import DuePlanScanner

# Service
from .service import (
    SCAN_LOCK_RESOURCE,
    SchedulerHealth,
    SchedulerService,
    SchedulerStats,
    TickSummary,
)
from .side_effects import SideEffectDispatcher

# Backends
from .thread_backend import ThreadSchedulerBackend

logger = get_logger(__name__)

__all__ = [
    # Protocol
    "SchedulerBackend",
    "BackendHealth",
    # Backends
    "ThreadSchedulerBackend",
    # Repository
    "PlanRepository",
    "PlanTransaction",
    "PlanCreate",
    # Locks
    "LockManager",
    "LockHandle",
    "LockStore",
    "RedisLockStore",
    "DatabaseLockStore",
    # Engine / scanner
    "ExecutionEngine",
    "EXECUTION_LOCK_PREFIX",
    "execution_lock_resource",
    "DuePlanScanner",
    "SideEffectDispatcher",
    # Service
    "SchedulerService",
    "SchedulerStats",
    "SchedulerHealth",
    "TickSummary",
    "SCAN_LOCK_RESOURCE",
    "create_scheduler",
]


def create_scheduler(
    settings: DcaSettings,
    *,
    session_factory: Callable[[], Session] | None = None,
    lock_store: LockStore | None = None,
    cache: CacheBackend | None = None,
    price_source: PriceSource | None = None,
    ledger: LedgerClient | None = None,
    notifier: Notifier | None = None,
    backend: SchedulerBackend | None = None,
) -> SchedulerService:
    """Factory function to create a fully wired scheduler service.

    Every collaborator can be overridden; the rest are built from
    ``settings``. The ledger defaults to ``SimulatedLedgerClient``.

    Example:
        >>> scheduler = create_scheduler(get_settings())
        >>> scheduler.start()
    """
    if session_factory is None:
        engine = create_dca_engine(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=None if settings.is_sqlite else settings.database_pool_size,
            max_wait_seconds=settings.transaction_max_wait_seconds,
        )
        session_factory = dca_session_factory(engine)

    repository = PlanRepository(
        session_factory,
        isolation_level=settings.transaction_isolation_level,
        max_wait_seconds=settings.transaction_max_wait_seconds,
        timeout_seconds=settings.transaction_timeout_seconds,
    )

    if lock_store is None:
        if settings.lock_backend == "redis":
            lock_store = RedisLockStore.from_url(settings.redis_url)
        else:
            lock_store = DatabaseLockStore(session_factory)
    lock_manager = LockManager(
        lock_store, prefix=settings.lock_prefix, instance_id=settings.instance_id
    )

    if cache is None:
        cache = RedisCache(settings.redis_url) if settings.cache_backend == "redis" else InMemoryCache()

    oracle = CachedPriceOracle(
        price_source
        or CoinGeckoPriceSource(
            settings.price_api_url,
            api_key=settings.price_api_key,
            timeout=settings.price_timeout_seconds,
            coin_ids=settings.price_coin_ids,
            default_coin_id=settings.price_default_coin_id,
            vs_currency=settings.price_vs_currency,
        ),
        cache,
        ttl_seconds=settings.price_cache_ttl_seconds,
        stale_ttl_seconds=settings.price_stale_ttl_seconds,
    )

    if notifier is None:
        if settings.email_service_url:
            notifier = EmailEndpointNotifier(
                settings.email_service_url,
                api_key=settings.email_service_api_key,
                timeout=settings.email_timeout_seconds,
            )
        else:
            notifier = LogNotifier()

    engine_ = ExecutionEngine(
        repository,
        lock_manager,
        oracle,
        ledger or SimulatedLedgerClient(),
        SideEffectDispatcher(cache, notifier),
        lock_lease_seconds=settings.execution_lock_ttl_seconds,
        deposit_decimals=settings.deposit_decimals,
        amount_out_decimals=settings.amount_out_decimals,
        retry_cooldown_seconds=settings.retry_cooldown_seconds,
        max_attempts=settings.max_attempts_per_execution,
    )

    logger.info(
        "scheduler_created",
        lock_backend=settings.lock_backend,
        cache_backend=settings.cache_backend,
        instance_id=lock_manager.instance_id,
    )
    return SchedulerService(
        backend=backend or ThreadSchedulerBackend(),
        scanner=DuePlanScanner(repository, limit=settings.scan_batch_limit),
        engine=engine_,
        lock_manager=lock_manager,
        repository=repository,
        interval_seconds=settings.tick_interval_seconds,
        scan_lock_lease_seconds=settings.scan_lock_ttl_seconds,
    )
