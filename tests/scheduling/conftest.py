"""Pytest fixtures for scheduling tests."""

import pytest

from dcaspine.scheduling import DuePlanScanner, SchedulerService, ThreadSchedulerBackend


@pytest.fixture
def scanner(repository):
    return DuePlanScanner(repository, limit=100)


@pytest.fixture
def scheduler_service(scanner, engine, lock_manager, repository):
    """SchedulerService with a thread backend and a 60s cadence."""
    service = SchedulerService(
        backend=ThreadSchedulerBackend(stop_timeout=1.0),
        scanner=scanner,
        engine=engine,
        lock_manager=lock_manager,
        repository=repository,
        interval_seconds=60,
        scan_lock_lease_seconds=55,
    )
    yield service
    service.stop()
