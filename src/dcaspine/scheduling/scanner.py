"""Due-plan scanner.

A pure, lock-free read that lists the plans due for execution, oldest-due
first and bounded per call so a backlog drains fairly over several ticks.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

from dcaspine.core.logging import get_logger
from dcaspine.core.models import PlanRef

from .repository import PlanRepository

logger = get_logger(__name__)


class DuePlanScanner:
    """Selects ACTIVE plans with ``next_execution_at <= now`` and steps remaining."""

    def __init__(
        self,
        repository: PlanRepository,
        *,
        limit: int = 100,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")
        self.repository = repository
        self.limit = limit
        self._clock = clock or (lambda: datetime.now(UTC))

    def get_due_plans(self) -> list[PlanRef]:
        now = self._clock()
        plans = self.repository.find_due_plans(now, self.limit)
        if len(plans) == self.limit:
            logger.info("due_scan_batch_full", limit=self.limit)
        logger.debug("due_scan_complete", count=len(plans))
        return plans
