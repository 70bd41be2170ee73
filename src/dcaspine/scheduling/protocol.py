"""Scheduler backend protocol.

┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULER BACKEND PROTOCOL                                                   │
│                                                                               │
│  Backends control WHEN ticks happen; SchedulerService controls WHAT happens   │
│  on each tick (scan lock, due-plan scan, sequential execution).               │
│                                                                               │
│   ┌─────────────────┐       tick()       ┌──────────────────────┐            │
│   │  Thread Backend │ ─────────────────► │  SchedulerService    │            │
│   │  (default)      │                    │  - scan lock         │            │
│   └─────────────────┘                    │  - find due plans    │            │
│                                          │  - execute each plan │            │
│                                          └──────────────────────┘            │
│                                                                               │
│  A backend must never let a slow tick delay the timer: the next tick is      │
│  scheduled on the fixed cadence regardless of how long the previous one      │
│  takes.                                                                       │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

TickCallback = Callable[[], Awaitable[Any]]


@runtime_checkable
class SchedulerBackend(Protocol):
    """Protocol for pluggable scheduler timing backends.

    Example (custom backend):
        >>> class MyBackend:
        ...     name = "custom"
        ...
        ...     def start(self, tick_callback, interval_seconds=60.0):
        ...         my_timer.every(interval_seconds, lambda: asyncio.run(tick_callback()))
        ...
        ...     def stop(self):
        ...         my_timer.cancel()
        ...
        ...     def health(self) -> dict:
        ...         return {"healthy": True, "backend": "custom"}
    """

    name: str

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 60.0,
    ) -> None:
        """Start calling ``tick_callback`` every ``interval_seconds``."""
        ...

    def stop(self) -> None:
        """Stop the loop; wait briefly for an in-flight tick."""
        ...

    def health(self) -> dict[str, Any]:
        """Return at least ``healthy``, ``backend``, ``tick_count``, ``last_tick``."""
        ...


@dataclass
class BackendHealth:
    """Structured backend health response."""

    healthy: bool
    backend: str
    tick_count: int = 0
    last_tick: datetime | None = None
    drift_ms: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "drift_ms": self.drift_ms,
            **self.extra,
        }
