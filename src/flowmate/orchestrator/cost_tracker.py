"""Daily spend accounting with reservations for in-flight executions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date

from flowmate.storage.repository import FlowmateRepository
from flowmate.timezone import date_range_in_tz, today_in_tz

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class BudgetCheck:
    """Admission decision for one more execution."""

    allowed: bool
    remaining: float


class CostTracker:
    """Answers "can one more task start?" against the configured daily limit.

    Recorded spend comes from finished executions. Executions that are still
    running have not reported a cost yet, so each one holds a reservation worth
    one full per-task cap until it settles.
    """

    def __init__(self, repository: FlowmateRepository, timezone: str) -> None:
        self._repository = repository
        self._timezone = timezone
        self._reservations = 0

    @property
    def pending_reservations(self) -> int:
        return self._reservations

    def daily_cost(self, day: date | None = None) -> float:
        """Recorded spend for ``day`` (default: today) in the configured timezone."""

        target = day or today_in_tz(self._timezone)
        start, end = date_range_in_tz(target, self._timezone)
        return self._repository.sum_cost_between(start=start, end=end)

    def check_budget(self, daily_limit: float, per_task_cap: float) -> BudgetCheck:
        used = self.daily_cost()
        reserved = self._reservations * per_task_cap
        remaining = max(0.0, daily_limit - used - reserved)
        allowed = remaining >= per_task_cap
        if not allowed:
            logger.info(
                "Budget check denied: used=%.4f reservations=%d remaining=%.4f cap=%.4f",
                used,
                self._reservations,
                remaining,
                per_task_cap,
            )
        return BudgetCheck(allowed=allowed, remaining=remaining)

    def reserve(self) -> Callable[[], None]:
        """Hold one reservation; the returned callback releases it on first call only."""

        self._reservations += 1
        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            self._reservations -= 1

        return release
