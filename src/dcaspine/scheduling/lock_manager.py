"""Distributed lock manager for the execution scheduler.

Manifesto:
    Multiple scheduler instances must never execute the same plan step
    simultaneously, and only one of them should scan per tick. The lock
    manager hands out time-bounded leases from a shared ``LockStore`` so a
    crashed holder never wedges the system: its lease simply runs out.

    Lock errors FAIL CLOSED. If the store cannot be reached, ``acquire``
    answers exactly as if the lock were held, and the caller skips the
    unit of work. Running two executions of a financial step concurrently
    is strictly worse than skipping a tick.

Lock lifecycle::

        acquire(resource, lease)
            │  token = "<instance>-<random>"
            │  store.set_if_absent("lock:<resource>", token, lease)
            ├── stored   → LockHandle(token)
            └── present  → None   (someone else holds it; not an error)
                error    → None   (fail closed)

        LockHandle.release()
            │  store.compare_and_delete(key, token)
            ├── deleted  → True
            └── mismatch → False  (lease expired and was re-acquired
                                   by another holder; logged, no-op)

Lease sizing:
    - per-plan lock: longer than one transactional execution
    - scan lock: tick interval minus a small margin, so a stuck holder's
      lease always expires before the next tick

Tags:
    dcaspine, scheduling, distributed-locks, TTL, concurrency, safety

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar
from uuid import uuid4

from dcaspine.core.logging import get_logger

from .lock_store import LockStore

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class LockHandle:
    """Proof of a successful acquisition; release it exactly once."""

    resource: str
    key: str
    token: str
    lease_seconds: int
    _store: LockStore = field(repr=False)
    _released: bool = field(default=False, repr=False)

    def release(self) -> bool:
        """Delete the lock only if it still carries this handle's token.

        Returns:
            True if released, False if the lock had expired, was taken over,
            or the store was unreachable.
        """
        if self._released:
            return False
        self._released = True

        try:
            released = self._store.compare_and_delete(self.key, self.token)
        except Exception as e:
            # Lease expiry reclaims the lock; nothing else to do here
            logger.error("lock_release_error", resource=self.resource, error=str(e))
            return False

        if released:
            logger.debug("lock_released", resource=self.resource)
        else:
            logger.warning("lock_release_stale", resource=self.resource)
        return released


class LockManager:
    """Acquire and release named leases on a shared lock store.

    Example:
        >>> manager = LockManager(RedisLockStore.from_url(url), instance_id="scheduler-1")
        >>> handle = manager.acquire("dca-execution:plan-1", lease_seconds=45)
        >>> if handle is None:
        ...     print("Another instance has the lock")
        ... else:
        ...     try:
        ...         ...
        ...     finally:
        ...         handle.release()
    """

    def __init__(
        self,
        store: LockStore,
        *,
        prefix: str = "lock:",
        instance_id: str | None = None,
    ) -> None:
        self.store = store
        self.prefix = prefix
        self.instance_id = instance_id or str(uuid4())

    def _key(self, resource: str) -> str:
        return f"{self.prefix}{resource}"

    def _new_token(self) -> str:
        return f"{self.instance_id}-{uuid4().hex}"

    def acquire(self, resource: str, lease_seconds: int) -> LockHandle | None:
        """Try once to take the lock. Never blocks or retries.

        Args:
            resource: Resource name (e.g. ``"dca-execution:<plan_id>"``)
            lease_seconds: Lock expiry; must exceed the protected work

        Returns:
            LockHandle if acquired, None if held elsewhere or the store failed
        """
        if lease_seconds <= 0:
            raise ValueError(f"lease_seconds must be positive, got {lease_seconds}")

        key = self._key(resource)
        token = self._new_token()
        try:
            acquired = self.store.set_if_absent(key, token, lease_seconds)
        except Exception as e:
            logger.error("lock_acquire_error", resource=resource, error=str(e))
            return None

        if not acquired:
            logger.debug("lock_held", resource=resource)
            return None

        logger.debug("lock_acquired", resource=resource, lease_seconds=lease_seconds)
        return LockHandle(
            resource=resource,
            key=key,
            token=token,
            lease_seconds=lease_seconds,
            _store=self.store,
        )

    def with_lock(
        self,
        resource: str,
        fn: Callable[[], T],
        lease_seconds: int,
    ) -> T | None:
        """Run ``fn`` while holding the lock; ``None`` if it could not be taken."""
        handle = self.acquire(resource, lease_seconds)
        if handle is None:
            return None
        try:
            return fn()
        finally:
            handle.release()

    def get_lock_holder(self, resource: str) -> str | None:
        """Return the owner token currently stored for ``resource``."""
        try:
            return self.store.get(self._key(resource))
        except Exception as e:
            logger.error("lock_lookup_error", resource=resource, error=str(e))
            return None

    def is_locked(self, resource: str) -> bool:
        return self.get_lock_holder(resource) is not None
