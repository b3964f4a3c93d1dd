"""Database models for the vaccination scheduler."""

from vaccine_scheduler.models.patient import Dose, Patient, Vaccine, patient_conditions
from vaccine_scheduler.models.site import Condition, Site, condition_sites
from vaccine_scheduler.models.slot import Slot, SlotState

__all__ = [
    # Sites
    "Site",
    "Condition",
    "condition_sites",
    # Patients
    "Patient",
    "Vaccine",
    "Dose",
    "patient_conditions",
    # Slots
    "Slot",
    "SlotState",
]
