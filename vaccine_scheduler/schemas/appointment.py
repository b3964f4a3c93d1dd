"""Pydantic schemas for appointment scheduling.

Includes schemas for:
- Sites, slots and doses as shown to the patient
- Home summary, day listing, booking request/response
"""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from vaccine_scheduler.utils.time import ensure_utc


# =============================================================================
# Read Schemas
# =============================================================================


class SiteRead(BaseModel):
    """Schema for reading a site."""

    id: str
    name: str
    address: str | None = None
    enabled_for_reschedule: bool

    model_config = {"from_attributes": True}


class SlotRead(BaseModel):
    """Schema for reading a slot."""

    id: str
    start: datetime
    end: datetime
    site_id: str
    follow_up_for_dose: bool

    model_config = {"from_attributes": True}

    @field_validator("start", "end")
    @classmethod
    def as_utc(cls, v: datetime) -> datetime:
        """Stored times are UTC even when the driver drops the offset."""
        return ensure_utc(v)


class DoseRead(BaseModel):
    """Schema for reading an administered dose."""

    id: str
    sequence_number: int
    vaccine_id: str
    slot_id: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class SiteSlots(BaseModel):
    """Free slots at one site."""

    site: SiteRead
    slots: list[SlotRead]


# =============================================================================
# Responses
# =============================================================================


class HomeResponse(BaseModel):
    """Patient scheduling summary."""

    state: str = Field(
        ...,
        description="update_profile, vaccinated, scheduled, can_schedule or cannot_schedule",
    )
    message: str | None = None
    current_slot: SlotRead | None = None
    can_cancel_or_reschedule: bool | None = None
    change_reschedule_after: datetime | None = None
    doses: list[DoseRead] = Field(default_factory=list)
    available_slots_count: int | None = None


class OpenSlotsResponse(BaseModel):
    """Free slots for one day, grouped by site sorted by site name."""

    days: int
    reschedule: bool
    sites: list[SiteSlots]


class ScheduleRequest(BaseModel):
    """Booking request.

    ``start`` stays a string so malformed input degrades to "no preference"
    instead of a validation error.
    """

    site_id: str | None = None
    start: str | None = None


class ScheduleResponse(BaseModel):
    """Booking result."""

    result: str
    message: str
    slot: SlotRead | None = None
    desired_start: datetime | None = None
    time_changed: bool = False


class VaccinatedResponse(BaseModel):
    """Completed series."""

    patient_id: str
    name: str
    doses: list[DoseRead]
