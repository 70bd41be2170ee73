"""Lock stores: the shared key-value backends behind ``LockManager``.

Manifesto:
    Mutual exclusion between scheduler instances on different hosts needs
    state that lives outside every one of them. A lock store offers exactly
    two atomic primitives and nothing else:

    - **set-if-absent-with-expiry**  (acquire a lease)
    - **compare-and-delete**         (release only what you still own)

Architecture:
    ::

        LockStore (Protocol)
        ├── RedisLockStore     SET key token NX EX ttl / Lua GET==token → DEL
        └── DatabaseLockStore  dca_locks row; expired rows are reclaimed on
                               acquire, INSERT conflicts mean "held"

Guardrails:
    ❌ DON'T: Use an in-process mutex; it excludes nothing across hosts
    ✅ DO: Point every scheduler instance at the same Redis / database

    ❌ DON'T: Release with a plain DEL
    ✅ DO: Compare the owner token in the same atomic step as the delete

Tags:
    dcaspine, scheduling, distributed-locks, redis, lua, TTL

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol

import redis
from sqlalchemy import delete, select
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session

from dcaspine.core.logging import get_logger
from dcaspine.core.orm.tables import LockTable

logger = get_logger(__name__)

# Only delete the key if it still holds our token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class LockStore(Protocol):
    """Atomic primitives a lock backend must provide."""

    def set_if_absent(self, key: str, token: str, ttl_seconds: int) -> bool:
        """Store ``token`` under ``key`` for ``ttl_seconds`` unless a live value exists."""
        ...

    def compare_and_delete(self, key: str, token: str) -> bool:
        """Delete ``key`` only if its value equals ``token``."""
        ...

    def get(self, key: str) -> str | None:
        """Return the live token under ``key``, if any."""
        ...


class RedisLockStore:
    """Redis-backed lock store (``SET NX EX`` + Lua compare-and-delete).

    Example:
        >>> store = RedisLockStore(redis.from_url("redis://localhost:6379/0"))
        >>> store.set_if_absent("lock:cron:dca-executor", "token-1", 55)
        True
    """

    def __init__(self, client: redis.Redis) -> None:
        self._client = client
        self._release = client.register_script(RELEASE_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> RedisLockStore:
        return cls(redis.from_url(url, decode_responses=True))

    def set_if_absent(self, key: str, token: str, ttl_seconds: int) -> bool:
        return bool(self._client.set(key, token, nx=True, ex=ttl_seconds))

    def compare_and_delete(self, key: str, token: str) -> bool:
        return int(self._release(keys=[key], args=[token])) == 1

    def get(self, key: str) -> str | None:
        value = self._client.get(key)
        if isinstance(value, bytes):
            return value.decode()
        return value


class DatabaseLockStore:
    """Lock store on the ``dca_locks`` table.

    For deployments that have a shared database but no Redis. Each
    operation runs in its own short transaction, independent of any plan
    execution transaction.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def set_if_absent(self, key: str, token: str, ttl_seconds: int) -> bool:
        now = datetime.now(UTC)
        with self._session_factory() as session:
            try:
                session.execute(
                    delete(LockTable).where(
                        LockTable.resource == key, LockTable.expires_at <= now
                    )
                )
                session.add(
                    LockTable(
                        resource=key,
                        owner_token=token,
                        acquired_at=now,
                        expires_at=now + timedelta(seconds=ttl_seconds),
                    )
                )
                session.commit()
                return True
            except sa_exc.IntegrityError:
                session.rollback()
                return False

    def compare_and_delete(self, key: str, token: str) -> bool:
        with self._session_factory() as session:
            result = session.execute(
                delete(LockTable).where(
                    LockTable.resource == key, LockTable.owner_token == token
                )
            )
            session.commit()
            return result.rowcount > 0

    def get(self, key: str) -> str | None:
        now = datetime.now(UTC)
        with self._session_factory() as session:
            return session.scalar(
                select(LockTable.owner_token).where(
                    LockTable.resource == key, LockTable.expires_at > now
                )
            )

    def cleanup_expired(self) -> int:
        """Remove expired rows left behind by crashed holders."""
        with self._session_factory() as session:
            result = session.execute(
                delete(LockTable).where(LockTable.expires_at <= datetime.now(UTC))
            )
            session.commit()
            count = result.rowcount
        if count:
            logger.info("expired_locks_cleaned", count=count)
        return count
