"""Patient appointment endpoints.

Home summary, day-by-day slot listing, booking (including reschedule) and
cancellation of the patient's current slot.
"""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Response, status

from vaccine_scheduler.api.deps import CurrentPatient, Scheduler
from vaccine_scheduler.models.patient import Patient
from vaccine_scheduler.schemas.appointment import (
    DoseRead,
    HomeResponse,
    OpenSlotsResponse,
    ScheduleRequest,
    ScheduleResponse,
    SiteRead,
    SiteSlots,
    SlotRead,
    VaccinatedResponse,
)
from vaccine_scheduler.services.booking import ScheduleOutcome, ScheduleResult
from vaccine_scheduler.services.scheduler import AppointmentScheduler
from vaccine_scheduler.utils.time import parse_desired_start

router = APIRouter()

CANNOT_CANCEL_MESSAGE = "You cannot cancel or reschedule your appointment."
NO_SLOTS_AHEAD_MESSAGE = "There are no slots available for scheduling."


def _doses(patient: Patient) -> list[DoseRead]:
    return [DoseRead.model_validate(dose) for dose in patient.doses]


def success_message(outcome: ScheduleOutcome) -> str:
    """Confirmation text, flagging a booked time away from the requested one."""
    if outcome.time_changed:
        return (
            "Vaccination scheduled. However, the date and/or time you selected was "
            "taken by someone else. Check the new date and time found for you."
        )
    return "Vaccination scheduled."


async def _require_cancel_or_reschedule(
    scheduler: AppointmentScheduler,
    patient: Patient,
) -> None:
    decision = await scheduler.can_cancel_or_reschedule(patient)
    if not decision:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=CANNOT_CANCEL_MESSAGE,
        )


@router.get(
    "/home",
    response_model=HomeResponse,
)
async def home(
    patient: CurrentPatient,
    scheduler: Scheduler,
) -> HomeResponse:
    """Scheduling summary for the patient's landing page."""
    if patient.force_user_update:
        return HomeResponse(
            state="update_profile",
            message="Please update your profile before scheduling.",
        )

    if patient.vaccinated:
        return HomeResponse(state="vaccinated", doses=_doses(patient))

    current = await scheduler.current_slot(patient)
    if current is not None:
        decision = await scheduler.can_cancel_or_reschedule(patient)
        return HomeResponse(
            state="scheduled",
            current_slot=SlotRead.model_validate(current),
            can_cancel_or_reschedule=decision.allowed,
            change_reschedule_after=patient.change_reschedule_after,
            doses=_doses(patient),
        )

    decision = await scheduler.can_schedule(patient)
    if not decision:
        return HomeResponse(
            state="cannot_schedule",
            message=decision.message,
            doses=_doses(patient),
        )

    allowed = await scheduler.allowed_site_ids(patient)
    count = await scheduler.free_slot_count(allowed, scheduler.is_reschedule(patient))

    return HomeResponse(
        state="can_schedule",
        doses=_doses(patient),
        available_slots_count=count,
    )


@router.get(
    "",
    response_model=OpenSlotsResponse,
)
async def list_open_slots(
    patient: CurrentPatient,
    scheduler: Scheduler,
    page: int | None = Query(None, description="Days from today"),
) -> OpenSlotsResponse:
    """Free slots for one day, defaulting to the first day with capacity."""
    await _require_cancel_or_reschedule(scheduler, patient)

    reschedule = scheduler.is_reschedule(patient)
    allowed = await scheduler.allowed_site_ids(patient)

    if page is None:
        horizon = await scheduler.days_ahead_with_open_slot(allowed, reschedule)
        page = horizon.days if horizon.days is not None else 0

    max_days = scheduler.config.latest_allowed_offset.days
    days = min(max(0, page), max_days)

    open_slots = await scheduler.open_slots_for_day(days, allowed, reschedule)
    if open_slots.no_free_slots_ahead:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=NO_SLOTS_AHEAD_MESSAGE,
        )

    return OpenSlotsResponse(
        days=days,
        reschedule=reschedule,
        sites=[
            SiteSlots(
                site=SiteRead.model_validate(site),
                slots=[SlotRead.model_validate(slot) for slot in slots],
            )
            for site, slots in open_slots.sorted_by_site_name()
        ],
    )


@router.post(
    "",
    response_model=ScheduleResponse,
    status_code=status.HTTP_201_CREATED,
)
async def schedule_appointment(
    patient: CurrentPatient,
    scheduler: Scheduler,
    request: ScheduleRequest,
) -> ScheduleResponse:
    """Book a slot, or move the current booking to a new one."""
    await _require_cancel_or_reschedule(scheduler, patient)

    desired_start: datetime | None = parse_desired_start(
        request.start, scheduler.config.time_zone
    )
    outcome = await scheduler.schedule(
        patient=patient,
        site_id=request.site_id,
        desired_start=desired_start,
        reschedule=scheduler.is_reschedule(patient),
    )

    if outcome.result == ScheduleResult.CONDITIONS_UNMET:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not in a group that can schedule appointments.",
        )

    if outcome.result == ScheduleResult.NO_SLOTS:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Sorry, the slot is no longer available. Please try again.",
        )

    return ScheduleResponse(
        result=outcome.result.value,
        message=success_message(outcome),
        slot=SlotRead.model_validate(outcome.slot),
        desired_start=outcome.desired_start,
        time_changed=outcome.time_changed,
    )


@router.delete(
    "/current",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def cancel_appointment(
    patient: CurrentPatient,
    scheduler: Scheduler,
) -> Response:
    """Cancel the patient's current appointment."""
    current = await scheduler.current_slot(patient)
    if current is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No current appointment",
        )

    outcome = await scheduler.cancel(patient, current)
    if not outcome.cancelled:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=CANNOT_CANCEL_MESSAGE,
        )

    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/vaccinated",
    response_model=VaccinatedResponse,
)
async def vaccinated(
    patient: CurrentPatient,
) -> VaccinatedResponse:
    """Dose history of a patient who completed the series."""
    if not patient.vaccinated:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Vaccination series not complete",
        )

    return VaccinatedResponse(
        patient_id=patient.id,
        name=patient.name,
        doses=_doses(patient),
    )
