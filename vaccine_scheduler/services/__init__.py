"""Business logic services."""

from vaccine_scheduler.services.booking import (
    BookingTransaction,
    CurrentSlotConflictError,
    PatientNotFoundError,
    ScheduleOutcome,
    ScheduleResult,
    SchedulingError,
)
from vaccine_scheduler.services.cancellation import (
    CancellationHandler,
    CancelOutcome,
    CancelResult,
)
from vaccine_scheduler.services.catalog import DiscoveryOutcome, OpenSlots, SlotCatalog
from vaccine_scheduler.services.horizon import HorizonOutcome, HorizonResult, HorizonSearch
from vaccine_scheduler.services.scheduler import AppointmentScheduler
from vaccine_scheduler.services.slot_store import SlotStore

__all__ = [
    "AppointmentScheduler",
    "SlotStore",
    "SlotCatalog",
    "OpenSlots",
    "DiscoveryOutcome",
    "HorizonSearch",
    "HorizonResult",
    "HorizonOutcome",
    "BookingTransaction",
    "ScheduleOutcome",
    "ScheduleResult",
    "CancellationHandler",
    "CancelOutcome",
    "CancelResult",
    "SchedulingError",
    "PatientNotFoundError",
    "CurrentSlotConflictError",
]
