"""Eligibility policy for booking, cancelling and rescheduling.

Both write paths consult these functions, and the booking transaction
re-evaluates them after loading fresh state, so a decision made by the caller
before discovery is never trusted on its own.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from vaccine_scheduler.models.patient import Patient
from vaccine_scheduler.models.slot import Slot
from vaccine_scheduler.utils.time import ensure_utc


class EligibilityRestriction(str, Enum):
    """Reason an eligibility check failed."""

    PROFILE_UPDATE_REQUIRED = "profile_update_required"
    ALREADY_VACCINATED = "already_vaccinated"
    ALREADY_SCHEDULED = "already_scheduled"
    RESCHEDULE_CONDITION_UNMET = "reschedule_condition_unmet"
    FOLLOW_UP_WINDOW_PENDING = "follow_up_window_pending"
    NONE = "none"


@dataclass(frozen=True)
class EligibilityDecision:
    """Outcome of an eligibility check.

    Attributes:
        allowed: Whether the action may proceed
        restriction: Why it may not, or NONE
        message: Human-readable explanation
    """

    allowed: bool
    restriction: EligibilityRestriction
    message: str

    def __bool__(self) -> bool:
        return self.allowed


ALLOWED = EligibilityDecision(
    allowed=True,
    restriction=EligibilityRestriction.NONE,
    message="Allowed.",
)


def check_profile(patient: Patient) -> EligibilityDecision:
    """Guards shared by every booking: profile review and series completion."""
    if patient.force_user_update:
        return EligibilityDecision(
            allowed=False,
            restriction=EligibilityRestriction.PROFILE_UPDATE_REQUIRED,
            message="Patient profile must be updated before scheduling.",
        )

    if patient.vaccinated:
        return EligibilityDecision(
            allowed=False,
            restriction=EligibilityRestriction.ALREADY_VACCINATED,
            message="Patient is already fully vaccinated.",
        )

    return ALLOWED


def can_schedule(patient: Patient, current_slot: Slot | None) -> EligibilityDecision:
    """Check whether the patient may create a new booking.

    Denied when a profile update is pending, the series is complete, or the
    patient already holds a current unchecked-out slot.

    Args:
        patient: Patient with flags loaded
        current_slot: The patient's current slot, if any

    Returns:
        EligibilityDecision
    """
    decision = check_profile(patient)
    if not decision:
        return decision

    if current_slot is not None and not current_slot.checked_out:
        return EligibilityDecision(
            allowed=False,
            restriction=EligibilityRestriction.ALREADY_SCHEDULED,
            message="Patient already holds a scheduled slot.",
        )

    return ALLOWED


def can_cancel_or_reschedule(
    patient: Patient,
    current_slot: Slot | None,
    now: datetime,
) -> EligibilityDecision:
    """Check whether the patient may cancel or move their booking.

    Patients with dose history depend entirely on the externally computed
    reschedule condition. First-dose patients may always cancel, except out
    of a follow-up-for-dose slot whose start is still ahead.

    Args:
        patient: Patient with doses loaded
        current_slot: The patient's current slot, if any
        now: Evaluation time

    Returns:
        EligibilityDecision
    """
    if patient.has_doses:
        if not patient.reschedule_condition_met:
            return EligibilityDecision(
                allowed=False,
                restriction=EligibilityRestriction.RESCHEDULE_CONDITION_UNMET,
                message="Minimum interval since the last dose has not been reached.",
            )
        return ALLOWED

    if current_slot is not None and current_slot.follow_up_for_dose:
        if ensure_utc(now) < ensure_utc(current_slot.start):
            return EligibilityDecision(
                allowed=False,
                restriction=EligibilityRestriction.FOLLOW_UP_WINDOW_PENDING,
                message="Follow-up dose slots cannot be cancelled before they start.",
            )

    return ALLOWED
