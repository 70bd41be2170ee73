"""Tests for ThreadSchedulerBackend."""

import threading
import time

import pytest

from dcaspine.scheduling import BackendHealth, SchedulerBackend, ThreadSchedulerBackend


class TestThreadSchedulerBackend:
    """Test ThreadSchedulerBackend implementation."""

    def test_implements_protocol(self):
        backend = ThreadSchedulerBackend()
        assert isinstance(backend, SchedulerBackend)
        assert backend.name == "thread"

    def test_default_state(self):
        backend = ThreadSchedulerBackend()
        assert backend.is_running is False
        assert backend.tick_count == 0
        assert backend.ticks_overlapped == 0
        assert backend.last_tick is None

    def test_invalid_interval(self):
        backend = ThreadSchedulerBackend()

        async def tick():
            pass

        with pytest.raises(ValueError):
            backend.start(tick, interval_seconds=0)

    @pytest.mark.slow
    def test_start_and_stop(self):
        backend = ThreadSchedulerBackend()
        calls = []

        async def tick():
            calls.append(1)

        backend.start(tick, interval_seconds=0.1)
        assert backend.is_running

        time.sleep(0.35)
        backend.stop()

        assert not backend.is_running
        assert backend.tick_count >= 2
        assert len(calls) >= 2

    def test_stop_when_not_started(self):
        ThreadSchedulerBackend().stop()

    def test_double_start_is_noop(self):
        backend = ThreadSchedulerBackend()

        async def tick():
            pass

        backend.start(tick, interval_seconds=60.0)
        backend.start(tick, interval_seconds=60.0)
        assert backend.is_running
        backend.stop()

    @pytest.mark.slow
    def test_failing_tick_keeps_loop_alive(self):
        backend = ThreadSchedulerBackend()
        calls = []

        async def tick():
            calls.append(1)
            raise RuntimeError("boom")

        backend.start(tick, interval_seconds=0.05)
        deadline = time.monotonic() + 3.0
        while len(calls) < 2 and time.monotonic() < deadline:
            time.sleep(0.02)
        running = backend.is_running
        backend.stop()

        assert running
        assert len(calls) >= 2

    @pytest.mark.slow
    def test_slow_tick_does_not_delay_cadence(self):
        """A tick that outlasts the interval is skipped, not queued."""
        backend = ThreadSchedulerBackend(stop_timeout=2.0)
        release = threading.Event()
        started = []

        async def tick():
            started.append(time.monotonic())
            release.wait(timeout=2.0)

        backend.start(tick, interval_seconds=0.05)
        time.sleep(0.4)

        # Timer kept firing while the first tick was blocked
        assert backend.tick_count >= 4
        assert len(started) == 1
        assert backend.ticks_overlapped >= 3

        release.set()
        backend.stop()


class TestThreadBackendHealth:
    def test_health_before_start(self):
        health = ThreadSchedulerBackend().health()

        assert health["healthy"] is False
        assert health["backend"] == "thread"
        assert health["tick_count"] == 0
        assert health["last_tick"] is None
        assert health["ticks_overlapped"] == 0

    def test_get_health_returns_backend_health(self):
        health = ThreadSchedulerBackend().get_health()
        assert isinstance(health, BackendHealth)
        assert health.healthy is False

    @pytest.mark.slow
    def test_health_after_ticks(self):
        backend = ThreadSchedulerBackend()

        async def tick():
            pass

        backend.start(tick, interval_seconds=0.05)
        time.sleep(0.2)
        health = backend.health()
        backend.stop()

        assert health["healthy"] is True
        assert health["tick_count"] >= 1
        assert health["last_tick"] is not None
        assert health["drift_ms"] is not None
        assert health["interval_seconds"] == 0.05
