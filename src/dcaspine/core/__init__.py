"""Core primitives shared by every dcaspine component.

Modules
-------
errors      DcaError hierarchy, ErrorCategory, is_retryable
logging     structlog configuration, get_logger, LogContext
settings    DcaSettings (pydantic-settings), get_settings
cache       CacheBackend, InMemoryCache, RedisCache
models      Plan, ExecutionRecord, ExecutionResult, enums
money       fixed-point amount-out arithmetic
orm         SQLAlchemy tables, engine and transaction scoping
"""

from dcaspine.core.errors import (
    DcaError,
    DuplicateExecutionError,
    InvalidConfigError,
    LedgerError,
    PlanNotFoundError,
    PriceUnavailableError,
    TransactionTimeoutError,
)
from dcaspine.core.logging import LogContext, configure_logging, get_logger
from dcaspine.core.models import (
    ExecutionRecord,
    ExecutionResult,
    ExecutionStatus,
    Interval,
    Plan,
    PlanPatch,
    PlanRef,
    PlanStatus,
)
from dcaspine.core.settings import DcaSettings, get_settings

__all__ = [
    "DcaError",
    "DuplicateExecutionError",
    "InvalidConfigError",
    "LedgerError",
    "PlanNotFoundError",
    "PriceUnavailableError",
    "TransactionTimeoutError",
    "LogContext",
    "configure_logging",
    "get_logger",
    "ExecutionRecord",
    "ExecutionResult",
    "ExecutionStatus",
    "Interval",
    "Plan",
    "PlanPatch",
    "PlanRef",
    "PlanStatus",
    "DcaSettings",
    "get_settings",
]
