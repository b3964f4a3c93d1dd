"""Atomic assignment of a patient to a slot.

The booking transaction re-checks eligibility against freshly loaded state,
picks a candidate, claims it with a compare-and-swap and, when the patient
already held a slot, releases that slot in the same database transaction.
Lost claim races are retried against the next candidate and only surface as
NO_SLOTS once the attempt budget is spent. A claim also fails when the patient
gained another current slot in the meantime, so concurrent bookings by one
patient never leave them holding two.
"""

import logging
from collections.abc import Callable, Collection, Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from vaccine_scheduler.booking.policy import (
    EligibilityDecision,
    can_cancel_or_reschedule,
    can_schedule,
    check_profile,
)
from vaccine_scheduler.core.config import SchedulingConfig
from vaccine_scheduler.core.logging import audit_logger
from vaccine_scheduler.models.patient import Patient
from vaccine_scheduler.models.slot import Slot
from vaccine_scheduler.services.slot_store import SlotStore
from vaccine_scheduler.utils.time import beginning_of_day, end_of_day, ensure_utc, utc_now

logger = logging.getLogger(__name__)


class SchedulingError(Exception):
    """Base class for scheduling faults that are not business outcomes."""

    pass


class PatientNotFoundError(SchedulingError):
    """Raised when the patient being scheduled does not exist."""

    pass


class CurrentSlotConflictError(SchedulingError):
    """Raised when a patient holds more than one current slot.

    The single-current-slot invariant is broken in storage; nothing should
    be claimed or released until it is repaired.
    """

    pass


class ScheduleResult(str, Enum):
    """Outcome codes of a booking attempt."""

    SUCCESS = "success"
    NO_SLOTS = "no_slots"
    CONDITIONS_UNMET = "conditions_unmet"


@dataclass
class ScheduleOutcome:
    """Result of a booking attempt.

    Unpacks as ``(result, slot)``. ``desired_start`` and ``slot.start`` are
    both exposed so callers can tell the patient when the booked time
    differs; ``time_changed`` is that comparison under the configured
    rounding tolerance.
    """

    result: ScheduleResult
    slot: Slot | None = None
    desired_start: datetime | None = None
    time_changed: bool = False
    released_slot_id: str | None = None
    decision: EligibilityDecision | None = None

    def __iter__(self) -> Iterator:
        return iter((self.result, self.slot))

    @property
    def success(self) -> bool:
        return self.result == ScheduleResult.SUCCESS


async def current_slot_for(
    store: SlotStore,
    patient_id: str,
    now: datetime,
    tz_name: str = "UTC",
) -> Slot | None:
    """The patient's current slot, verifying there is at most one.

    Raises:
        CurrentSlotConflictError: If storage holds several current slots
    """
    slots = await store.current_slots(patient_id, beginning_of_day(now, tz_name))
    if len(slots) > 1:
        logger.error(
            f"Patient {patient_id} holds {len(slots)} current slots",
            extra={"patient_id": patient_id},
        )
        raise CurrentSlotConflictError(
            f"Patient {patient_id} holds {len(slots)} current slots"
        )
    return slots[0] if slots else None


def pick_candidate(candidates: Sequence[Slot], desired_start: datetime | None) -> Slot:
    """Nearest slot to ``desired_start``, or the earliest when there is none.

    Candidates must be sorted by start; ties on distance go to the earlier slot.
    """
    if desired_start is None:
        return candidates[0]

    desired = ensure_utc(desired_start)
    return min(
        candidates,
        key=lambda slot: (abs(ensure_utc(slot.start) - desired), ensure_utc(slot.start)),
    )


class BookingTransaction:
    """Validates, selects and claims a slot for one patient."""

    def __init__(
        self,
        store: SlotStore,
        config: SchedulingConfig,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.config = config
        self.clock = clock

    def booking_window(self, now: datetime) -> tuple[datetime, datetime]:
        """Earliest and latest start a booking may target."""
        return (
            now + self.config.earliest_allowed_offset,
            end_of_day(now + self.config.latest_allowed_offset, self.config.time_zone),
        )

    def _check_eligibility(
        self,
        patient: Patient,
        current: Slot | None,
        reschedule: bool,
        now: datetime,
    ) -> EligibilityDecision:
        # Holding a slot, or moving a dosed series, is a reschedule
        if current is None and not (reschedule and patient.has_doses):
            return can_schedule(patient, current)

        decision = check_profile(patient)
        if not decision:
            return decision
        return can_cancel_or_reschedule(patient, current, now)

    @staticmethod
    def _dose_site_id(patient: Patient) -> str | None:
        """Site of the most recent dose given at one of our slots."""
        for dose in reversed(patient.doses):
            if dose.slot is not None:
                return dose.slot.site_id
        return None

    def _resolve_site_ids(
        self,
        patient: Patient,
        site_id: str | None,
        reschedule: bool,
        allowed_site_ids: Collection[str],
    ) -> list[str]:
        allowed = set(allowed_site_ids)

        if reschedule and patient.has_doses:
            pinned = self._dose_site_id(patient)
            if pinned is not None:
                if site_id is not None and site_id != pinned:
                    logger.info(
                        f"Requested site {site_id} differs from dose site {pinned}",
                        extra={"patient_id": patient.id, "site_id": site_id},
                    )
                    return []
                site_id = pinned

        if site_id is None:
            return sorted(allowed)

        return [site_id] if site_id in allowed else []

    def _time_changed(self, desired_start: datetime | None, slot: Slot) -> bool:
        if desired_start is None:
            return False
        delta = abs(ensure_utc(desired_start) - ensure_utc(slot.start))
        return delta > self.config.rounding_tolerance

    async def schedule(
        self,
        patient: Patient,
        site_id: str | None,
        desired_start: datetime | None,
        reschedule: bool,
        allowed_site_ids: Collection[str],
    ) -> ScheduleOutcome:
        """Assign the patient to a free slot.

        Args:
            patient: Patient to book; reloaded from storage before any check
            site_id: Requested site, or None for any allowed site
            desired_start: Preferred start time, or None for the earliest
            reschedule: Reschedule flow (reschedule-enabled sites only,
                        pinned to the dose site for dosed patients)
            allowed_site_ids: Sites the caller may book at

        Returns:
            ScheduleOutcome

        Raises:
            PatientNotFoundError: If the patient no longer exists
            CurrentSlotConflictError: If the patient holds several current slots
        """
        now = self.clock()
        patient_id = patient.id

        await self.store.lock_patient(patient_id)
        fresh = await self.store.get_patient(patient_id)
        if fresh is None:
            raise PatientNotFoundError(f"Patient {patient_id} not found")

        current = await current_slot_for(self.store, patient_id, now, self.config.time_zone)

        decision = self._check_eligibility(fresh, current, reschedule, now)
        if not decision:
            logger.info(
                f"Scheduling refused for patient {patient_id}: {decision.restriction.value}",
                extra={"patient_id": patient_id},
            )
            return ScheduleOutcome(
                result=ScheduleResult.CONDITIONS_UNMET,
                desired_start=desired_start,
                decision=decision,
            )

        site_ids = self._resolve_site_ids(fresh, site_id, reschedule, allowed_site_ids)
        if not site_ids:
            return ScheduleOutcome(result=ScheduleResult.NO_SLOTS, desired_start=desired_start)

        from_, to = self.booking_window(now)
        since = beginning_of_day(now, self.config.time_zone)
        current_id = current.id if current is not None else None
        excluded: set[str] = {current_id} if current_id is not None else set()
        claimed: Slot | None = None

        for attempt in range(1, self.config.max_claim_attempts + 1):
            candidates = await self.store.free_slots_in_range(
                site_ids, from_, to, reschedule=reschedule, exclude_ids=excluded
            )
            if not candidates:
                break

            candidate = pick_candidate(candidates, desired_start)
            if await self.store.try_claim(candidate.id, patient_id, since, current_id):
                claimed = candidate
                break

            logger.info(
                f"Slot {candidate.id} taken concurrently (attempt {attempt})",
                extra={"patient_id": patient_id, "slot_id": candidate.id},
            )
            excluded.add(candidate.id)

        if claimed is None:
            return ScheduleOutcome(result=ScheduleResult.NO_SLOTS, desired_start=desired_start)

        released_slot_id = None
        if current_id is not None:
            # Same transaction as the claim: both land on commit or neither does
            if not await self.store.release(current_id, patient_id):
                logger.warning(
                    f"Could not release slot {current_id} during reschedule",
                    extra={"patient_id": patient_id, "slot_id": current_id},
                )
                # Rollback expires every loaded instance; touch none afterwards
                await self.store.rollback()
                return ScheduleOutcome(
                    result=ScheduleResult.CONDITIONS_UNMET,
                    desired_start=desired_start,
                )
            released_slot_id = current_id

        await self.store.commit()
        slot = await self.store.refresh(claimed)

        audit_logger.log(
            action="slot_claimed",
            patient_id=patient_id,
            slot_id=slot.id,
            metadata={"site_id": slot.site_id, "released_slot_id": released_slot_id},
        )

        return ScheduleOutcome(
            result=ScheduleResult.SUCCESS,
            slot=slot,
            desired_start=desired_start,
            time_changed=self._time_changed(desired_start, slot),
            released_slot_id=released_slot_id,
            decision=decision,
        )
