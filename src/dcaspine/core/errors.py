"""
Structured error types for the DCA execution scheduler.

Every failure in the scheduler is classified so the orchestrator can decide
whether to record-and-retry on the next tick, short-circuit, or fail loudly.

Manifesto:
    - **Typed Error Hierarchy:** Different error types for different failure classes
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry plan/execution metadata for logging
    - **Error Chaining:** Preserve original exceptions while adding context

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                        DcaError                                  │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  TransientError          InvariantError     ConfigError         │
        │  (retryable=True)        (INVARIANT)        (CONFIG)            │
        │       │                       │                  │               │
        │  PriceUnavailableError   PlanNotFoundError  MissingConfigError  │
        │  LedgerError             InvalidStatus-     InvalidConfigError  │
        │                          TransitionError                         │
        │  TransactionTimeoutError                                         │
        │  LockStoreError          DatabaseError                           │
        │                          (DATABASE)                              │
        │                               │                                  │
        │                          DuplicateExecutionError                 │
        └─────────────────────────────────────────────────────────────────┘

    Mapping to the scheduler's failure taxonomy:

        Lock contention      -> not an error (``None`` from acquire/execute)
        Transient dependency -> TransientError, recorded as a Failed execution
        Invariant violation  -> InvariantError, logged short-circuit
        Programming/config   -> ConfigError, fails start-up

Guardrails:
    ❌ DON'T: Raise plain Exception for expected failure cases
    ✅ DO: Use the matching DcaError subclass

    ❌ DON'T: Swallow the original exception
    ✅ DO: Pass it as cause= for error chaining

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context,
    dcaspine

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    # Infrastructure errors (usually transient)
    NETWORK = "NETWORK"           # Price API, email endpoint
    DATABASE = "DATABASE"         # Pool exhaustion, serialization failures
    LOCK = "LOCK"                 # Lock store unavailable

    # Dependency errors
    PRICING = "PRICING"           # No live price and no cached fallback
    LEDGER = "LEDGER"             # Settlement write rejected

    # Never retryable
    INVARIANT = "INVARIANT"       # Plan missing, impossible state
    CONFIG = "CONFIG"             # Missing config, invalid settings

    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only non-None fields end up in ``to_dict()``, so errors raised deep in
    the engine log cleanly without a wall of empty keys.

    Examples:
        >>> ctx = ErrorContext(plan_id="p-1", execution_number=4)
        >>> ctx.to_dict()
        {'plan_id': 'p-1', 'execution_number': 4}
    """

    plan_id: str | None = None
    execution_number: int | None = None
    resource: str | None = None
    url: str | None = None
    http_status: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["plan_id", "execution_number", "resource", "url", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class DcaError(Exception):
    """
    Base exception for all scheduler errors.

    All DcaError instances carry:
    - **category:** ErrorCategory enum for classification
    - **retryable:** Whether the same unit of work may succeed on a later tick
    - **context:** ErrorContext with structured metadata
    - **cause:** Optional underlying exception for chaining

    Subclasses set ``default_category`` and ``default_retryable`` so call
    sites only pass a message.

    Examples:
        >>> error = DcaError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.retryable
        False

        >>> error = PriceUnavailableError("no price").with_context(plan_id="p-1")
        >>> error.to_dict()["context"]
        {'plan_id': 'p-1'}
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DcaError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (retried on the next due tick)
# =============================================================================


class TransientError(DcaError):
    """
    Temporary dependency failure.

    The execution engine records these as a Failed execution and leaves the
    plan's counters untouched, so the scanner surfaces the plan again on the
    following tick.
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class PriceUnavailableError(TransientError):
    """Neither a live price nor a cached fallback is available."""

    default_category = ErrorCategory.PRICING


class LedgerError(TransientError):
    """The settlement write failed or was rejected."""

    default_category = ErrorCategory.LEDGER


class TransactionTimeoutError(TransientError):
    """A repository transaction exceeded its max-wait or overall timeout."""

    default_category = ErrorCategory.DATABASE


class LockStoreError(TransientError):
    """The lock store could not be reached."""

    default_category = ErrorCategory.LOCK


# =============================================================================
# INVARIANT ERRORS
# =============================================================================


class InvariantError(DcaError):
    """State that should be impossible if callers behave."""

    default_category = ErrorCategory.INVARIANT
    default_retryable = False


class PlanNotFoundError(InvariantError):
    """A plan id handed to the engine does not exist."""

    def __init__(self, plan_id: str):
        super().__init__(f"Plan {plan_id} not found", context=ErrorContext(plan_id=plan_id))
        self.plan_id = plan_id


class InvalidStatusTransitionError(InvariantError):
    """An operator status change that would break the plan lifecycle."""

    def __init__(self, plan_id: str, current: str, requested: str):
        super().__init__(
            f"Plan {plan_id} cannot move from {current} to {requested}",
            context=ErrorContext(plan_id=plan_id, metadata={"current": current, "requested": requested}),
        )
        self.plan_id = plan_id
        self.current = current
        self.requested = requested


# =============================================================================
# DATABASE ERRORS
# =============================================================================


class DatabaseError(DcaError):
    """Database operation error."""

    default_category = ErrorCategory.DATABASE
    default_retryable = False


class DuplicateExecutionError(DatabaseError):
    """A second record was written for an existing (plan, execution number) slot."""

    def __init__(self, plan_id: str, execution_number: int, *, cause: Exception | None = None):
        super().__init__(
            f"Execution {execution_number} of plan {plan_id} already recorded",
            context=ErrorContext(plan_id=plan_id, execution_number=execution_number),
            cause=cause,
        )
        self.plan_id = plan_id
        self.execution_number = execution_number


# =============================================================================
# CONFIG ERRORS
# =============================================================================


class ConfigError(DcaError):
    """Configuration error - never retryable."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class MissingConfigError(ConfigError):
    """Required configuration missing."""

    def __init__(self, key: str, message: str | None = None):
        super().__init__(message or f"Missing required config: {key}")
        self.key = key


class InvalidConfigError(ConfigError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        super().__init__(message or f"Invalid config value for {key}: {value!r}")
        self.key = key
        self.value = value


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, DcaError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, DcaError):
        return error.category
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.NETWORK
    if isinstance(error, (KeyError, AttributeError)):
        return ErrorCategory.CONFIG
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "DcaError",
    "TransientError",
    "PriceUnavailableError",
    "LedgerError",
    "TransactionTimeoutError",
    "LockStoreError",
    "InvariantError",
    "PlanNotFoundError",
    "InvalidStatusTransitionError",
    "DatabaseError",
    "DuplicateExecutionError",
    "ConfigError",
    "MissingConfigError",
    "InvalidConfigError",
    "is_retryable",
    "categorize_error",
]
