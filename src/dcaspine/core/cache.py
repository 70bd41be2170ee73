"""
Caching abstraction with in-memory and Redis implementations.

Used for the price oracle's fresh/stale entries and for the read-side
plan views that the execution engine invalidates after each commit.

Manifesto:
    - **Protocol-based:** CacheBackend defines the contract
    - **Tier-aware:** InMemoryCache for dev/tests, RedisCache for production
    - **TTL support:** Time-based expiration for all backends
    - **Pattern invalidation:** ``delete_pattern("user-plans:42:*")`` drops a whole view family

Architecture:
    ::

        CacheBackend (Protocol)
        ├── InMemoryCache  - single-process, bounded LRU
        └── RedisCache     - distributed, shared across scheduler instances

        API: get(key) → value | None
             set(key, value, ttl_seconds=None)
             delete(key)
             delete_pattern(pattern) → int
             exists(key) → bool

Guardrails:
    ❌ DON'T: Use InMemoryCache across multiple scheduler instances
    ✅ DO: Use RedisCache so every instance sees the same price and invalidations

Tags:
    cache, caching, redis, in-memory, ttl, dcaspine

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import fnmatch
import json
import threading
import time
from typing import Any, Protocol

import redis


class CacheBackend(Protocol):
    """Protocol for cache backend implementations.

    Keys are strings, values are JSON-serializable.
    """

    def get(self, key: str) -> Any | None:
        """Return the cached value, or ``None`` if missing or expired."""
        ...

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        """Store a value with optional TTL (``None`` → backend default)."""
        ...

    def delete(self, key: str) -> None:
        """Remove a key. No-op if it does not exist."""
        ...

    def delete_pattern(self, pattern: str) -> int:
        """Remove every key matching a glob pattern; returns the count removed."""
        ...

    def exists(self, key: str) -> bool:
        """Check if a key exists and has not expired."""
        ...


# ------------------------------------------------------------------ #
# In-Memory Cache
# ------------------------------------------------------------------ #


class InMemoryCache:
    """Bounded in-memory cache with TTL support.

    Uses LRU eviction when ``max_size`` is reached. Safe to share between
    the scheduler thread and the side-effect workers.

    Example:
        cache = InMemoryCache(max_size=500, default_ttl_seconds=60)
        cache.set("price:bitcoin:usd", {"price": "65000"})
    """

    def __init__(
        self,
        *,
        max_size: int = 10_000,
        default_ttl_seconds: int | None = 3600,
    ):
        self._store: dict[str, tuple[Any, float | None]] = {}
        self._access_order: list[str] = []
        self._max_size = max_size
        self._default_ttl = default_ttl_seconds
        self._lock = threading.RLock()

    def get(self, key: str) -> Any | None:
        """Retrieve a value by key."""
        with self._lock:
            if key not in self._store:
                return None

            value, expires_at = self._store[key]

            if expires_at is not None and time.time() > expires_at:
                self.delete(key)
                return None

            if key in self._access_order:
                self._access_order.remove(key)
            self._access_order.append(key)

            return value

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        """Store a value with optional TTL."""
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = (time.time() + ttl) if ttl else None

        with self._lock:
            if key not in self._store and len(self._store) >= self._max_size:
                if self._access_order:
                    lru_key = self._access_order.pop(0)
                    self._store.pop(lru_key, None)

            self._store[key] = (value, expires_at)

            if key in self._access_order:
                self._access_order.remove(key)
            self._access_order.append(key)

    def delete(self, key: str) -> None:
        """Remove a key from the cache."""
        with self._lock:
            self._store.pop(key, None)
            if key in self._access_order:
                self._access_order.remove(key)

    def delete_pattern(self, pattern: str) -> int:
        """Remove all keys matching a glob pattern."""
        with self._lock:
            matched = [key for key in self._store if fnmatch.fnmatchcase(key, pattern)]
            for key in matched:
                self.delete(key)
            return len(matched)

    def exists(self, key: str) -> bool:
        """Check if key exists and is not expired."""
        return self.get(key) is not None

    def size(self) -> int:
        """Return current number of cached keys."""
        return len(self._store)


# ------------------------------------------------------------------ #
# Redis Cache
# ------------------------------------------------------------------ #


class RedisCache:
    """Redis-backed distributed cache.

    Example:
        cache = RedisCache("redis://localhost:6379/0", default_ttl_seconds=600)
        cache.delete_pattern("user-plans:42:*")
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        client: redis.Redis | None = None,
        default_ttl_seconds: int | None = 3600,
    ):
        self._client = client if client is not None else redis.from_url(url, decode_responses=False)
        self._default_ttl = default_ttl_seconds

    def get(self, key: str) -> Any | None:
        """Retrieve a value by key."""
        raw = self._client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return None

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        """Store a value with optional TTL."""
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        serialized = json.dumps(value)

        if ttl:
            self._client.setex(key, ttl, serialized)
        else:
            self._client.set(key, serialized)

    def delete(self, key: str) -> None:
        """Remove a key from the cache."""
        self._client.delete(key)

    def delete_pattern(self, pattern: str) -> int:
        """Remove all keys matching a glob pattern.

        Uses SCAN rather than KEYS so a large keyspace never blocks Redis.
        """
        keys = list(self._client.scan_iter(match=pattern, count=500))
        if not keys:
            return 0
        return int(self._client.delete(*keys))

    def exists(self, key: str) -> bool:
        """Check if key exists."""
        return bool(self._client.exists(key))


__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
]
