"""Post-commit side effects: cache invalidation and owner notification.

Both effects run on a small worker pool after the execution transaction has
committed. They are submitted independently and in no particular order;
either may fail without affecting the other or the caller. Failures are
logged and dropped.

Cache keys invalidated per execution::

    plan:{plan_id}               single-plan view
    user-plans:{owner_id}:*      every cached page of the owner's plan list
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures

from dcaspine.core.cache import CacheBackend
from dcaspine.core.logging import get_logger
from dcaspine.notifications.notifier import ExecutionEvent, Notifier

logger = get_logger(__name__)


def plan_cache_key(plan_id: str) -> str:
    return f"plan:{plan_id}"


def owner_plans_pattern(owner_id: str) -> str:
    return f"user-plans:{owner_id}:*"


class SideEffectDispatcher:
    """Fire-and-forget dispatcher for cache invalidation and notifications."""

    def __init__(
        self,
        cache: CacheBackend | None,
        notifier: Notifier | None,
        *,
        max_workers: int = 2,
    ) -> None:
        self.cache = cache
        self.notifier = notifier
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dca-side-effect")
        self._pending: set[Future[None]] = set()
        self._lock = threading.Lock()

    def _submit(self, name: str, fn: Callable[[], None], **log_kw: object) -> None:
        def run() -> None:
            try:
                fn()
            except Exception as e:
                logger.warning("side_effect_failed", effect=name, error=str(e), **log_kw)

        try:
            future = self._executor.submit(run)
        except RuntimeError as e:
            # Executor already shut down
            logger.warning("side_effect_dropped", effect=name, error=str(e), **log_kw)
            return

        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future: Future[None]) -> None:
        with self._lock:
            self._pending.discard(future)

    def invalidate_plan(self, plan_id: str, owner_id: str) -> None:
        """Queue deletion of the plan's cached view and the owner's plan lists."""
        if self.cache is None:
            return
        cache = self.cache

        def invalidate() -> None:
            cache.delete(plan_cache_key(plan_id))
            dropped = cache.delete_pattern(owner_plans_pattern(owner_id))
            logger.debug("plan_cache_invalidated", plan_id=plan_id, owner_keys=dropped)

        self._submit("cache_invalidation", invalidate, plan_id=plan_id)

    def notify(self, event: ExecutionEvent) -> None:
        """Queue delivery of one execution event."""
        if self.notifier is None:
            return
        notifier = self.notifier
        self._submit(
            "notification",
            lambda: notifier.notify(event),
            plan_id=event.plan_id,
            kind=event.kind.value,
        )

    def flush(self, timeout: float | None = None) -> bool:
        """Wait for queued effects. Returns False if some are still running."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
