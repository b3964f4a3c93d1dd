"""Forward search for the first day with capacity."""

import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from vaccine_scheduler.core.config import SchedulingConfig
from vaccine_scheduler.services.slot_store import SlotStore
from vaccine_scheduler.utils.time import (
    beginning_of_day,
    days_from,
    end_of_day,
    local_day_offset,
    utc_now,
)

logger = logging.getLogger(__name__)


class HorizonOutcome(str, Enum):
    """Result of a horizon search."""

    FOUND = "found"
    HORIZON_EXHAUSTED = "horizon_exhausted"


@dataclass(frozen=True)
class HorizonResult:
    """Day offset of the first open slot; ``days`` is None when exhausted."""

    outcome: HorizonOutcome
    days: int | None = None

    @property
    def exhausted(self) -> bool:
        return self.outcome == HorizonOutcome.HORIZON_EXHAUSTED


class HorizonSearch:
    """Finds the smallest day offset holding at least one free slot."""

    def __init__(
        self,
        store: SlotStore,
        config: SchedulingConfig,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.config = config
        self.clock = clock

    def day_window(self, offset: int, now: datetime | None = None) -> tuple[datetime, datetime]:
        """Bounds of local day ``offset``, never earlier than bookings allow."""
        now = now or self.clock()
        tz_name = self.config.time_zone
        day = days_from(now, offset, tz_name)
        start = max(
            beginning_of_day(day, tz_name),
            now + self.config.earliest_allowed_offset,
        )
        return start, end_of_day(day, tz_name)

    async def days_ahead_with_open_slot(
        self,
        allowed_site_ids: Collection[str],
        reschedule: bool = False,
    ) -> HorizonResult:
        """Smallest offset in ``[0, search_horizon_days]`` with a free slot.

        One query for the earliest free start across the whole horizon gives
        the same answer as probing day by day, since the first day holding a
        free slot is the day of the earliest one.

        Args:
            allowed_site_ids: Sites the caller may book at
            reschedule: Restrict to sites accepting reschedule traffic

        Returns:
            HorizonResult with FOUND and the offset, or HORIZON_EXHAUSTED
        """
        now = self.clock()
        tz_name = self.config.time_zone
        from_, _ = self.day_window(0, now)
        _, to = self.day_window(self.config.search_horizon_days, now)

        if from_ > to:
            return HorizonResult(outcome=HorizonOutcome.HORIZON_EXHAUSTED)

        earliest = await self.store.earliest_free_start(
            allowed_site_ids, from_, to, reschedule=reschedule
        )
        if earliest is None:
            logger.info(
                f"Horizon of {self.config.search_horizon_days} days exhausted "
                f"(reschedule={reschedule})"
            )
            return HorizonResult(outcome=HorizonOutcome.HORIZON_EXHAUSTED)

        return HorizonResult(
            outcome=HorizonOutcome.FOUND,
            days=local_day_offset(now, earliest, tz_name),
        )
