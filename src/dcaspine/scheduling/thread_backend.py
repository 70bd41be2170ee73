"""Threading-based scheduler backend with a non-blocking cadence.

┌──────────────────────────────────────────────────────────────────────────────┐
│  THREAD BACKEND                                                               │
│                                                                               │
│   start()                                                                     │
│      │                                                                        │
│      ▼                                                                        │
│   Timer thread                              Worker (1 thread)                 │
│   ┌──────────────────────────────────┐      ┌──────────────────────────┐     │
│   │ while not stop.wait(remaining):  │      │ asyncio.run(tick())      │     │
│   │   tick_count += 1                │ ───► │                          │     │
│   │   worker busy? → overlapped += 1 │      └──────────────────────────┘     │
│   │   else submit tick               │                                        │
│   │   remaining = next deadline      │                                        │
│   └──────────────────────────────────┘                                        │
│                                                                               │
│   The timer only submits; it never waits for a tick to finish, so a slow     │
│   tick cannot push later ticks off their fixed cadence. A tick that fires    │
│   while the previous one is still running is skipped on this instance.       │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any

from dcaspine.core.logging import get_logger

from .protocol import BackendHealth, TickCallback

logger = get_logger(__name__)


class ThreadSchedulerBackend:
    """Default backend: a daemon timer thread feeding a single worker.

    Example:
        >>> backend = ThreadSchedulerBackend()
        >>> backend.start(service.tick, interval_seconds=60.0)
        >>> # ... later ...
        >>> backend.stop()
    """

    name = "thread"

    def __init__(self, *, stop_timeout: float = 5.0) -> None:
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._current: Future[Any] | None = None
        self._tick_count = 0
        self._ticks_overlapped = 0
        self._last_tick: datetime | None = None
        self._drift_ms: float | None = None
        self._interval: float = 60.0
        self._stop_timeout = stop_timeout
        self._started = False
        self._lock = threading.Lock()

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 60.0,
    ) -> None:
        """Start the timer thread; the first tick fires after one interval."""
        if self._started:
            logger.warning("thread_backend_already_started")
            return
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")

        self._interval = interval_seconds
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dca-tick")

        def _run_tick() -> None:
            try:
                asyncio.run(tick_callback())
            except Exception:
                logger.exception("tick_failed")

        def _loop() -> None:
            logger.info("thread_backend_started", interval_seconds=interval_seconds)
            next_deadline = time.monotonic() + interval_seconds
            while not self._stop_event.wait(max(0.0, next_deadline - time.monotonic())):
                fired_at = time.monotonic()
                with self._lock:
                    self._tick_count += 1
                    self._last_tick = datetime.now(UTC)
                    self._drift_ms = (fired_at - next_deadline) * 1000
                    busy = self._current is not None and not self._current.done()
                    if busy:
                        self._ticks_overlapped += 1
                    elif self._executor is not None:
                        self._current = self._executor.submit(_run_tick)
                if busy:
                    logger.warning("tick_overlapped", tick_count=self._tick_count)
                next_deadline += interval_seconds
                # Catch up without a burst if the timer itself fell behind
                if next_deadline < fired_at:
                    next_deadline = fired_at + interval_seconds
            logger.info("thread_backend_stopped")

        self._thread = threading.Thread(target=_loop, daemon=True, name="dca-scheduler")
        self._thread.start()
        self._started = True

    def stop(self) -> None:
        """Stop the timer and wait up to ``stop_timeout`` for the in-flight tick."""
        if not self._started:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=self._stop_timeout)
            if self._thread.is_alive():
                logger.warning("scheduler_thread_not_stopped")

        current = self._current
        if current is not None and not current.done():
            try:
                current.result(timeout=self._stop_timeout)
            except TimeoutError:
                logger.warning("tick_still_running_at_stop")
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

        self._started = False
        logger.info("thread_backend_shutdown_complete")

    def health(self) -> dict[str, Any]:
        return self.get_health().to_dict()

    def get_health(self) -> BackendHealth:
        """Return structured health status."""
        return BackendHealth(
            healthy=self.is_running,
            backend=self.name,
            tick_count=self._tick_count,
            last_tick=self._last_tick,
            drift_ms=self._drift_ms,
            extra={
                "interval_seconds": self._interval,
                "ticks_overlapped": self._ticks_overlapped,
            },
        )

    @property
    def is_running(self) -> bool:
        return self._started and self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def ticks_overlapped(self) -> int:
        return self._ticks_overlapped

    @property
    def last_tick(self) -> datetime | None:
        return self._last_tick
