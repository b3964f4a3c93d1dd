"""Pydantic schemas for request/response validation."""

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

__all__ = [
    "SiteRead",
    "SlotRead",
    "DoseRead",
    "SiteSlots",
    "HomeResponse",
    "OpenSlotsResponse",
    "ScheduleRequest",
    "ScheduleResponse",
    "VaccinatedResponse",
]
