"""Scheduling facade used by the API layer.

Wires the catalog, horizon search, booking transaction and cancellation
handler to one store, configuration and clock, and resolves which sites a
patient may book at.
"""

from collections.abc import Callable, Collection
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from vaccine_scheduler.booking.policy import (
    EligibilityDecision,
    can_cancel_or_reschedule,
    can_schedule,
)
from vaccine_scheduler.core.config import SchedulingConfig
from vaccine_scheduler.models.patient import Patient
from vaccine_scheduler.models.slot import Slot
from vaccine_scheduler.services.booking import (
    BookingTransaction,
    ScheduleOutcome,
    current_slot_for,
)
from vaccine_scheduler.services.cancellation import CancellationHandler, CancelOutcome
from vaccine_scheduler.services.catalog import OpenSlots, SlotCatalog
from vaccine_scheduler.services.horizon import HorizonResult, HorizonSearch
from vaccine_scheduler.services.slot_store import SlotStore
from vaccine_scheduler.utils.time import utc_now


class AppointmentScheduler:
    """Entry point for slot discovery, booking and cancellation."""

    def __init__(
        self,
        session: AsyncSession,
        config: SchedulingConfig,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = SlotStore(session)
        self.config = config
        self.clock = clock
        self.catalog = SlotCatalog(self.store, config, clock)
        self.horizon = HorizonSearch(self.store, config, clock)
        self.booking = BookingTransaction(self.store, config, clock)
        self.cancellation = CancellationHandler(self.store, config, clock)

    async def get_patient(self, patient_id: str) -> Patient | None:
        return await self.store.get_patient(patient_id)

    async def allowed_site_ids(self, patient: Patient) -> list[str]:
        """Sites the patient may book at.

        Patients with dose history may use any reschedule-enabled site; first
        dose patients get the union of their conditions' sites.
        """
        if patient.has_doses:
            return await self.store.reschedule_site_ids()

        site_ids: set[str] = set()
        for condition in patient.conditions:
            if condition.active:
                site_ids.update(condition.site_ids)
        return sorted(site_ids)

    @staticmethod
    def is_reschedule(patient: Patient) -> bool:
        return patient.has_doses

    async def current_slot(self, patient: Patient) -> Slot | None:
        return await current_slot_for(
            self.store, patient.id, self.clock(), self.config.time_zone
        )

    async def can_schedule(self, patient: Patient) -> EligibilityDecision:
        return can_schedule(patient, await self.current_slot(patient))

    async def can_cancel_or_reschedule(self, patient: Patient) -> EligibilityDecision:
        return can_cancel_or_reschedule(patient, await self.current_slot(patient), self.clock())

    async def open_slots_by_site(
        self,
        from_: datetime,
        to: datetime,
        allowed_site_ids: Collection[str],
        reschedule: bool = False,
    ) -> OpenSlots:
        return await self.catalog.open_slots_by_site(from_, to, allowed_site_ids, reschedule)

    async def open_slots_for_day(
        self,
        days: int,
        allowed_site_ids: Collection[str],
        reschedule: bool = False,
    ) -> OpenSlots:
        """Free slots on local day ``days`` from today."""
        from_, to = self.horizon.day_window(days)
        return await self.catalog.open_slots_by_site(from_, to, allowed_site_ids, reschedule)

    async def free_slot_count(
        self,
        allowed_site_ids: Collection[str],
        reschedule: bool = False,
    ) -> int:
        return await self.catalog.free_slot_count(allowed_site_ids, reschedule)

    async def days_ahead_with_open_slot(
        self,
        allowed_site_ids: Collection[str],
        reschedule: bool = False,
    ) -> HorizonResult:
        return await self.horizon.days_ahead_with_open_slot(allowed_site_ids, reschedule)

    async def schedule(
        self,
        patient: Patient,
        site_id: str | None,
        desired_start: datetime | None,
        reschedule: bool,
        allowed_site_ids: Collection[str] | None = None,
    ) -> ScheduleOutcome:
        if allowed_site_ids is None:
            allowed_site_ids = await self.allowed_site_ids(patient)
        return await self.booking.schedule(
            patient, site_id, desired_start, reschedule, allowed_site_ids
        )

    async def cancel(self, patient: Patient, slot: Slot) -> CancelOutcome:
        return await self.cancellation.cancel(patient, slot)
