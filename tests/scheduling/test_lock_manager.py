"""Tests for LockManager."""

from unittest.mock import MagicMock

import pytest

from dcaspine.scheduling import LockManager


class TestLockManager:
    """Test LockManager lock operations."""

    def test_acquire_lock(self, lock_manager):
        handle = lock_manager.acquire("dca-execution:plan-1", lease_seconds=45)
        assert handle is not None
        assert handle.key == "lock:dca-execution:plan-1"
        assert handle.token.startswith("test-instance-")

    def test_acquire_held_lock_returns_none(self, lock_store):
        """A second holder is refused without blocking."""
        manager1 = LockManager(lock_store, instance_id="instance-1")
        manager2 = LockManager(lock_store, instance_id="instance-2")

        assert manager1.acquire("plan-2", 45) is not None
        assert manager2.acquire("plan-2", 45) is None

    def test_same_instance_cannot_reacquire(self, lock_manager):
        """Tokens are per acquisition, so the same instance is refused too."""
        assert lock_manager.acquire("plan-3", 45) is not None
        assert lock_manager.acquire("plan-3", 45) is None

    def test_release_lock(self, lock_manager):
        handle = lock_manager.acquire("plan-4", 45)

        assert handle.release() is True
        assert lock_manager.acquire("plan-4", 45) is not None

    def test_release_is_idempotent(self, lock_manager):
        handle = lock_manager.acquire("plan-5", 45)
        assert handle.release() is True
        assert handle.release() is False

    def test_stale_release_does_not_delete_new_owner(self, lock_store):
        """An expired holder's release must not remove a re-acquired lock."""
        manager1 = LockManager(lock_store, instance_id="instance-a")
        manager2 = LockManager(lock_store, instance_id="instance-b")

        stale = manager1.acquire("plan-6", 45)
        lock_store.expire(stale.key)
        fresh = manager2.acquire("plan-6", 45)
        assert fresh is not None

        assert stale.release() is False
        assert manager2.get_lock_holder("plan-6") == fresh.token
        assert fresh.release() is True

    def test_is_locked(self, lock_manager):
        assert lock_manager.is_locked("plan-7") is False
        handle = lock_manager.acquire("plan-7", 45)
        assert lock_manager.is_locked("plan-7") is True
        handle.release()
        assert lock_manager.is_locked("plan-7") is False

    def test_get_lock_holder(self, lock_manager):
        assert lock_manager.get_lock_holder("plan-8") is None
        handle = lock_manager.acquire("plan-8", 45)
        assert lock_manager.get_lock_holder("plan-8") == handle.token

    def test_invalid_lease(self, lock_manager):
        with pytest.raises(ValueError):
            lock_manager.acquire("plan-9", 0)

    def test_custom_prefix(self, lock_store):
        manager = LockManager(lock_store, prefix="dca:")
        assert manager.acquire("x", 10).key == "dca:x"


class TestLockManagerFailClosed:
    """Lock store errors are treated as 'held'."""

    def test_acquire_error_returns_none(self):
        store = MagicMock()
        store.set_if_absent.side_effect = ConnectionError("down")
        manager = LockManager(store)

        assert manager.acquire("plan-1", 45) is None

    def test_release_error_returns_false(self):
        store = MagicMock()
        store.set_if_absent.return_value = True
        store.compare_and_delete.side_effect = ConnectionError("down")
        manager = LockManager(store)

        handle = manager.acquire("plan-1", 45)
        assert handle.release() is False

    def test_lookup_error_reports_unlocked(self):
        store = MagicMock()
        store.get.side_effect = ConnectionError("down")
        assert LockManager(store).get_lock_holder("plan-1") is None


class TestWithLock:
    def test_runs_function_and_releases(self, lock_manager):
        result = lock_manager.with_lock("cron:job", lambda: 42, lease_seconds=10)
        assert result == 42
        assert lock_manager.is_locked("cron:job") is False

    def test_returns_none_when_held(self, lock_store, lock_manager):
        other = LockManager(lock_store, instance_id="other")
        other.acquire("cron:job", 10)
        calls = []

        assert lock_manager.with_lock("cron:job", lambda: calls.append(1), 10) is None
        assert calls == []

    def test_releases_on_exception(self, lock_manager):
        def boom():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            lock_manager.with_lock("cron:job", boom, 10)
        assert lock_manager.is_locked("cron:job") is False
