"""Booking module for eligibility policy enforcement."""

from vaccine_scheduler.booking.policy import (
    EligibilityDecision,
    EligibilityRestriction,
    can_cancel_or_reschedule,
    can_schedule,
)

__all__ = [
    "EligibilityDecision",
    "EligibilityRestriction",
    "can_cancel_or_reschedule",
    "can_schedule",
]
