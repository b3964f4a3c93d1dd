"""Free-slot discovery across sites.

Read-only: nothing here locks or writes. Listings may be stale by the time a
patient picks a slot; the booking transaction resolves that.
"""

import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from vaccine_scheduler.core.config import SchedulingConfig
from vaccine_scheduler.models.site import Site
from vaccine_scheduler.models.slot import Slot
from vaccine_scheduler.services.slot_store import SlotStore
from vaccine_scheduler.utils.time import days_from, end_of_day, utc_now

logger = logging.getLogger(__name__)


class DiscoveryOutcome(str, Enum):
    """Whether anything is bookable ahead, independent of the asked window."""

    OK = "ok"
    NO_FREE_SLOTS_AHEAD = "no_free_slots_ahead"


@dataclass
class OpenSlots:
    """Free slots grouped by site.

    ``slots_by_site`` may be empty with outcome OK: the window was empty but
    later days have capacity, so the caller should page forward.
    """

    outcome: DiscoveryOutcome
    slots_by_site: dict[Site, list[Slot]] = field(default_factory=dict)

    @property
    def no_free_slots_ahead(self) -> bool:
        return self.outcome == DiscoveryOutcome.NO_FREE_SLOTS_AHEAD

    def sorted_by_site_name(self) -> list[tuple[Site, list[Slot]]]:
        return sorted(self.slots_by_site.items(), key=lambda item: item[0].name)


class SlotCatalog:
    """Computes free slots per site within a time window."""

    def __init__(
        self,
        store: SlotStore,
        config: SchedulingConfig,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.config = config
        self.clock = clock

    def earliest_allowed(self, now: datetime | None = None) -> datetime:
        """First instant a booking may target."""
        now = now or self.clock()
        return now + self.config.earliest_allowed_offset

    def horizon_end(self, now: datetime | None = None) -> datetime:
        """Last instant of the last day the engine searches."""
        now = now or self.clock()
        return end_of_day(
            days_from(now, self.config.search_horizon_days, self.config.time_zone),
            self.config.time_zone,
        )

    async def open_slots_by_site(
        self,
        from_: datetime,
        to: datetime,
        allowed_site_ids: Collection[str],
        reschedule: bool = False,
    ) -> OpenSlots:
        """Free slots starting within ``[from_, to]`` at the allowed sites.

        Args:
            from_: Window start (inclusive)
            to: Window end (inclusive)
            allowed_site_ids: Sites the caller may book at
            reschedule: Restrict to sites accepting reschedule traffic

        Returns:
            OpenSlots; outcome NO_FREE_SLOTS_AHEAD when the whole forward
            horizon, not just the window, is empty
        """
        slots = await self.store.free_slots_in_range(
            allowed_site_ids, from_, to, reschedule=reschedule
        )

        if not slots:
            earliest = await self.store.earliest_free_start(
                allowed_site_ids,
                self.earliest_allowed(),
                self.horizon_end(),
                reschedule=reschedule,
            )
            if earliest is None:
                logger.info(
                    f"No free slots ahead for {len(allowed_site_ids)} sites "
                    f"(reschedule={reschedule})"
                )
                return OpenSlots(outcome=DiscoveryOutcome.NO_FREE_SLOTS_AHEAD)
            return OpenSlots(outcome=DiscoveryOutcome.OK)

        by_site: dict[Site, list[Slot]] = {}
        for slot in slots:
            by_site.setdefault(slot.site, []).append(slot)

        return OpenSlots(outcome=DiscoveryOutcome.OK, slots_by_site=by_site)

    async def free_slot_count(
        self,
        allowed_site_ids: Collection[str],
        reschedule: bool = False,
    ) -> int:
        """Bookable free slots within the default visibility window."""
        now = self.clock()
        window_end = end_of_day(
            days_from(now, self.config.slots_window_days, self.config.time_zone),
            self.config.time_zone,
        )
        return await self.store.count_free_slots(
            allowed_site_ids, self.earliest_allowed(now), window_end, reschedule=reschedule
        )
