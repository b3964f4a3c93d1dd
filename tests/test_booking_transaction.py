"""Tests for the booking transaction.

Covers:
- Candidate selection and rounding tolerance
- Site resolution, including dose-linked reschedules
- Eligibility re-checks inside the transaction
- Reschedule (claim new, release old) atomicity
- Claim retry when a candidate is taken concurrently
"""

from datetime import timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from vaccine_scheduler.booking.policy import EligibilityRestriction
from vaccine_scheduler.core.config import SchedulingConfig
from vaccine_scheduler.models.patient import Patient
from vaccine_scheduler.services.booking import (
    CurrentSlotConflictError,
    PatientNotFoundError,
    ScheduleResult,
    pick_candidate,
)
from vaccine_scheduler.services.scheduler import AppointmentScheduler
from vaccine_scheduler.utils.time import ensure_utc


@pytest.fixture
async def site(make_site):
    return await make_site("Central")


@pytest.fixture
async def patient(make_patient, make_condition, site):
    condition = await make_condition("Adults 60+", [site])
    return await make_patient(conditions=[condition])


class TestCandidateSelection:
    """Which free slot a booking lands on."""

    @pytest.mark.asyncio
    async def test_desired_time_within_tolerance(
        self, scheduler, patient, site, make_slot, at
    ) -> None:
        """Requesting 09:00 when 09:10 is nearest books 09:10 silently."""
        await make_slot(site, at(2, 8, 30))
        nearest = await make_slot(site, at(2, 9, 10))
        await make_slot(site, at(2, 10))

        outcome = await scheduler.schedule(patient, site.id, at(2, 9), reschedule=False)

        assert outcome.result == ScheduleResult.SUCCESS
        assert outcome.slot.id == nearest.id
        assert outcome.time_changed is False
        assert outcome.desired_start == at(2, 9)

    @pytest.mark.asyncio
    async def test_desired_time_beyond_tolerance(
        self, scheduler, patient, site, make_slot, at
    ) -> None:
        slot = await make_slot(site, at(2, 10))

        outcome = await scheduler.schedule(patient, site.id, at(2, 9), reschedule=False)

        assert outcome.result == ScheduleResult.SUCCESS
        assert outcome.slot.id == slot.id
        assert outcome.time_changed is True
        assert ensure_utc(outcome.slot.start) - outcome.desired_start == timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_tolerance_boundary_is_inclusive(
        self, scheduler, patient, site, make_slot, at
    ) -> None:
        await make_slot(site, at(2, 9, 15))

        outcome = await scheduler.schedule(patient, site.id, at(2, 9), reschedule=False)

        assert outcome.time_changed is False

    @pytest.mark.asyncio
    async def test_no_desired_time_books_earliest(
        self, scheduler, patient, site, make_slot, at
    ) -> None:
        await make_slot(site, at(3, 9))
        earliest = await make_slot(site, at(1, 14))

        result, slot = await scheduler.schedule(patient, site.id, None, reschedule=False)

        assert result == ScheduleResult.SUCCESS
        assert slot.id == earliest.id

    @pytest.mark.asyncio
    async def test_claim_is_persisted(self, scheduler, patient, site, make_slot, at) -> None:
        slot = await make_slot(site, at(1, 9))

        await scheduler.schedule(patient, site.id, None, reschedule=False)

        stored = await scheduler.store.get_slot(slot.id)
        assert stored.patient_id == patient.id
        current = await scheduler.current_slot(patient)
        assert current.id == slot.id

    @pytest.mark.asyncio
    async def test_outside_booking_window_not_booked(
        self, scheduler, patient, site, make_slot, at, config
    ) -> None:
        """Slots already started today or past the window ceiling are skipped."""
        await make_slot(site, at(0, 7))
        await make_slot(site, at(config.latest_allowed_offset.days + 1, 9))

        outcome = await scheduler.schedule(patient, site.id, None, reschedule=False)

        assert outcome.result == ScheduleResult.NO_SLOTS
        assert outcome.slot is None

    @pytest.mark.asyncio
    async def test_no_slots(self, scheduler, patient, site, at) -> None:
        outcome = await scheduler.schedule(patient, site.id, at(2, 9), reschedule=False)

        assert outcome.result == ScheduleResult.NO_SLOTS
        assert outcome.desired_start == at(2, 9)


class TestPickCandidate:
    """Nearest-slot selection."""

    @pytest.mark.asyncio
    async def test_tie_goes_to_earlier_slot(self, site, make_slot, at) -> None:
        before = await make_slot(site, at(2, 8, 50))
        after = await make_slot(site, at(2, 9, 10))

        assert pick_candidate([before, after], at(2, 9)).id == before.id

    @pytest.mark.asyncio
    async def test_without_desired_time_takes_first(self, site, make_slot, at) -> None:
        first = await make_slot(site, at(2, 8))
        second = await make_slot(site, at(2, 9))

        assert pick_candidate([first, second], None).id == first.id


class TestSiteResolution:
    """Which sites a booking may land on."""

    @pytest.mark.asyncio
    async def test_site_outside_allowed_set(
        self, scheduler, patient, make_site, make_slot, at
    ) -> None:
        elsewhere = await make_site("Elsewhere")
        await make_slot(elsewhere, at(1, 9))

        outcome = await scheduler.schedule(patient, elsewhere.id, None, reschedule=False)

        assert outcome.result == ScheduleResult.NO_SLOTS

    @pytest.mark.asyncio
    async def test_any_allowed_site(
        self, scheduler, make_site, make_condition, make_patient, make_slot, at
    ) -> None:
        north = await make_site("North")
        south = await make_site("South")
        first = await make_condition("Teachers", [north])
        second = await make_condition("Health workers", [south])
        patient = await make_patient(conditions=[first, second])
        await make_slot(north, at(2, 9))
        earliest = await make_slot(south, at(1, 9))

        outcome = await scheduler.schedule(patient, None, None, reschedule=False)

        assert outcome.slot.id == earliest.id

    @pytest.mark.asyncio
    async def test_inactive_condition_grants_nothing(
        self, scheduler, site, make_condition, make_patient, make_slot, at
    ) -> None:
        condition = await make_condition("Expired group", [site], active=False)
        patient = await make_patient(conditions=[condition])
        await make_slot(site, at(1, 9))

        outcome = await scheduler.schedule(patient, site.id, None, reschedule=False)

        assert outcome.result == ScheduleResult.NO_SLOTS

    @pytest.mark.asyncio
    async def test_dosed_reschedule_to_other_site_rejected(
        self, scheduler, make_site, make_patient, make_slot, past_slot, at
    ) -> None:
        """Allowed reschedule sites are B and C; asking for D yields no slots."""
        site_b = await make_site("B", enabled_for_reschedule=True)
        await make_site("C", enabled_for_reschedule=True)
        site_d = await make_site("D")
        first_dose = await past_slot(site_b)
        patient = await make_patient(dose_slots=[first_dose], reschedule_condition_met=True)
        await make_slot(site_d, at(1, 9))

        outcome = await scheduler.schedule(patient, site_d.id, None, reschedule=True)

        assert outcome.result == ScheduleResult.NO_SLOTS

    @pytest.mark.asyncio
    async def test_dosed_reschedule_to_other_enabled_site_rejected(
        self, scheduler, make_site, make_patient, make_slot, past_slot, at
    ) -> None:
        site_b = await make_site("B", enabled_for_reschedule=True)
        site_c = await make_site("C", enabled_for_reschedule=True)
        first_dose = await past_slot(site_b)
        patient = await make_patient(dose_slots=[first_dose], reschedule_condition_met=True)
        await make_slot(site_c, at(1, 9))

        outcome = await scheduler.schedule(patient, site_c.id, None, reschedule=True)

        assert outcome.result == ScheduleResult.NO_SLOTS

    @pytest.mark.asyncio
    async def test_dosed_reschedule_pinned_to_dose_site(
        self, scheduler, make_site, make_patient, make_slot, past_slot, at
    ) -> None:
        site_b = await make_site("B", enabled_for_reschedule=True)
        site_c = await make_site("C", enabled_for_reschedule=True)
        first_dose = await past_slot(site_b)
        patient = await make_patient(dose_slots=[first_dose], reschedule_condition_met=True)
        await make_slot(site_c, at(1, 9))
        at_dose_site = await make_slot(site_b, at(2, 9))

        outcome = await scheduler.schedule(patient, None, None, reschedule=True)

        assert outcome.result == ScheduleResult.SUCCESS
        assert outcome.slot.id == at_dose_site.id

    @pytest.mark.asyncio
    async def test_dose_given_elsewhere_uses_any_enabled_site(
        self, scheduler, make_site, make_patient, make_slot, at
    ) -> None:
        """A dose with no slot here does not pin the reschedule."""
        enabled = await make_site("Enabled", enabled_for_reschedule=True)
        plain = await make_site("Plain")
        patient = await make_patient(dose_slots=[None], reschedule_condition_met=True)
        await make_slot(plain, at(1, 9))
        slot = await make_slot(enabled, at(2, 9))

        outcome = await scheduler.schedule(patient, None, None, reschedule=True)

        assert outcome.slot.id == slot.id


class TestEligibilityRecheck:
    """Eligibility is evaluated inside the transaction."""

    @pytest.mark.asyncio
    async def test_profile_update_required(
        self, scheduler, site, make_condition, make_patient, make_slot, at
    ) -> None:
        condition = await make_condition("Adults 60+", [site])
        patient = await make_patient(conditions=[condition], force_user_update=True)
        await make_slot(site, at(1, 9))

        outcome = await scheduler.schedule(patient, site.id, None, reschedule=False)

        assert outcome.result == ScheduleResult.CONDITIONS_UNMET
        assert outcome.decision.restriction == EligibilityRestriction.PROFILE_UPDATE_REQUIRED

    @pytest.mark.asyncio
    async def test_flag_changed_after_caller_loaded_patient(
        self, scheduler, async_session, patient, site, make_slot, at
    ) -> None:
        """A stale in-memory patient does not bypass the check."""
        await make_slot(site, at(1, 9))
        await async_session.execute(
            Patient.__table__.update()
            .where(Patient.__table__.c.id == patient.id)
            .values(vaccinated=True)
        )
        await async_session.commit()

        outcome = await scheduler.schedule(patient, site.id, None, reschedule=False)

        assert outcome.result == ScheduleResult.CONDITIONS_UNMET

    @pytest.mark.asyncio
    async def test_dosed_patient_without_reschedule_condition(
        self, scheduler, make_site, make_patient, make_slot, past_slot, at
    ) -> None:
        site = await make_site("B", enabled_for_reschedule=True)
        first_dose = await past_slot(site)
        patient = await make_patient(dose_slots=[first_dose], reschedule_condition_met=False)
        await make_slot(site, at(1, 9))

        outcome = await scheduler.schedule(patient, site.id, None, reschedule=True)

        assert outcome.result == ScheduleResult.CONDITIONS_UNMET
        assert outcome.decision.restriction == EligibilityRestriction.RESCHEDULE_CONDITION_UNMET

    @pytest.mark.asyncio
    async def test_follow_up_slot_cannot_be_moved(
        self, scheduler, patient, site, make_slot, at
    ) -> None:
        await make_slot(site, at(3, 9), patient=patient, follow_up_for_dose=True)
        await make_slot(site, at(1, 9))

        outcome = await scheduler.schedule(patient, site.id, None, reschedule=False)

        assert outcome.result == ScheduleResult.CONDITIONS_UNMET

    @pytest.mark.asyncio
    async def test_unknown_patient(self, scheduler, site) -> None:
        ghost = Patient(id=str(uuid4()), name="Ghost", document="00000000000")

        with pytest.raises(PatientNotFoundError):
            await scheduler.schedule(ghost, site.id, None, reschedule=False, allowed_site_ids=[site.id])

    @pytest.mark.asyncio
    async def test_two_current_slots_is_a_fault(
        self, scheduler, patient, site, make_slot, at
    ) -> None:
        await make_slot(site, at(1, 9), patient=patient)
        await make_slot(site, at(2, 9), patient=patient)
        await make_slot(site, at(3, 9))

        with pytest.raises(CurrentSlotConflictError):
            await scheduler.schedule(patient, site.id, None, reschedule=False)


class TestReschedule:
    """Moving an existing booking."""

    @pytest.mark.asyncio
    async def test_moves_to_new_slot_and_frees_old(
        self, scheduler, patient, site, make_slot, at
    ) -> None:
        old = await make_slot(site, at(1, 9), patient=patient)
        new = await make_slot(site, at(3, 9))

        outcome = await scheduler.schedule(patient, site.id, at(3, 9), reschedule=False)

        assert outcome.result == ScheduleResult.SUCCESS
        assert outcome.slot.id == new.id
        assert outcome.released_slot_id == old.id
        assert (await scheduler.store.get_slot(old.id)).patient_id is None
        assert (await scheduler.store.get_slot(new.id)).patient_id == patient.id
        assert len(await scheduler.store.current_slots(patient.id, at(0, 0))) == 1

    @pytest.mark.asyncio
    async def test_current_slot_is_not_a_candidate(
        self, scheduler, patient, site, make_slot, at
    ) -> None:
        """With no other free slot the patient keeps the booking they have."""
        old = await make_slot(site, at(1, 9), patient=patient)

        outcome = await scheduler.schedule(patient, site.id, at(1, 9), reschedule=False)

        assert outcome.result == ScheduleResult.NO_SLOTS
        assert (await scheduler.store.get_slot(old.id)).patient_id == patient.id

    @pytest.mark.asyncio
    async def test_failed_release_rolls_back_claim(
        self, scheduler, patient, site, make_slot, at
    ) -> None:
        patient_id = patient.id
        old = await make_slot(site, at(1, 9), patient=patient)
        new = await make_slot(site, at(3, 9))
        old_id, new_id = old.id, new.id
        scheduler.store.release = AsyncMock(return_value=False)

        outcome = await scheduler.schedule(patient, site.id, None, reschedule=False)

        assert outcome.result == ScheduleResult.CONDITIONS_UNMET
        assert (await scheduler.store.get_slot(new_id)).patient_id is None
        assert (await scheduler.store.get_slot(old_id)).patient_id == patient_id

    @pytest.mark.asyncio
    async def test_checked_out_slot_is_not_current(
        self, scheduler, patient, site, make_slot, at
    ) -> None:
        """After check-out the patient books a fresh slot; nothing is released."""
        await make_slot(site, at(0, 7), patient=patient, check_out=at(0, 7, 20))
        new = await make_slot(site, at(2, 9))

        outcome = await scheduler.schedule(patient, site.id, None, reschedule=False)

        assert outcome.slot.id == new.id
        assert outcome.released_slot_id is None


class TestClaimRetry:
    """Lost claims move on to the next candidate."""

    @pytest.mark.asyncio
    async def test_lost_claim_retries_next_candidate(
        self, scheduler, patient, make_patient, site, make_slot, at
    ) -> None:
        rival = await make_patient("Rival")
        first = await make_slot(site, at(1, 9))
        second = await make_slot(site, at(1, 9, 20))
        claim = scheduler.store.try_claim

        async def rival_wins_first(slot_id: str, patient_id: str, *args) -> bool:
            if slot_id == first.id:
                await claim(slot_id, rival.id, *args)
                return False
            return await claim(slot_id, patient_id, *args)

        scheduler.store.try_claim = rival_wins_first

        outcome = await scheduler.schedule(patient, site.id, None, reschedule=False)

        assert outcome.result == ScheduleResult.SUCCESS
        assert outcome.slot.id == second.id
        assert (await scheduler.store.get_slot(first.id)).patient_id == rival.id

    @pytest.mark.asyncio
    async def test_claim_refused_while_patient_holds_other_slot(
        self, scheduler, patient, site, make_slot, at
    ) -> None:
        held = await make_slot(site, at(1, 9), patient=patient)
        free = await make_slot(site, at(2, 9))

        assert await scheduler.store.try_claim(free.id, patient.id, at(0, 0)) is False
        assert await scheduler.store.try_claim(
            free.id, patient.id, at(0, 0), keep_slot_id=held.id
        ) is True

    @pytest.mark.asyncio
    async def test_attempts_are_bounded(
        self, async_session, clock, patient, site, make_slot, at
    ) -> None:
        config = SchedulingConfig(max_claim_attempts=3)
        scheduler = AppointmentScheduler(async_session, config, clock)
        for hour in range(9, 15):
            await make_slot(site, at(1, hour))
        scheduler.store.try_claim = AsyncMock(return_value=False)

        outcome = await scheduler.schedule(patient, site.id, None, reschedule=False)

        assert outcome.result == ScheduleResult.NO_SLOTS
        assert scheduler.store.try_claim.await_count == 3
