"""Release of a patient's current slot back to the free pool."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from vaccine_scheduler.booking.policy import EligibilityDecision, can_cancel_or_reschedule
from vaccine_scheduler.core.config import SchedulingConfig
from vaccine_scheduler.core.logging import audit_logger
from vaccine_scheduler.models.patient import Patient
from vaccine_scheduler.models.slot import Slot
from vaccine_scheduler.services.booking import PatientNotFoundError, current_slot_for
from vaccine_scheduler.services.slot_store import SlotStore
from vaccine_scheduler.utils.time import utc_now

logger = logging.getLogger(__name__)


class CancelResult(str, Enum):
    """Outcome codes of a cancellation."""

    CANCELLED = "cancelled"
    NOT_CANCELABLE = "not_cancelable"


@dataclass(frozen=True)
class CancelOutcome:
    """Result of a cancellation; ``decision`` is set when eligibility refused it."""

    result: CancelResult
    message: str
    decision: EligibilityDecision | None = None

    @property
    def cancelled(self) -> bool:
        return self.result == CancelResult.CANCELLED


class CancellationHandler:
    """Clears the patient assignment of their current slot."""

    def __init__(
        self,
        store: SlotStore,
        config: SchedulingConfig,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.config = config
        self.clock = clock

    async def cancel(self, patient: Patient, slot: Slot) -> CancelOutcome:
        """Release ``slot`` if it is the patient's current, unchecked-out slot.

        The release is the same conditional UPDATE the booking transaction
        uses, so a concurrent claim on the slot sees it either fully held or
        fully free.

        Raises:
            CurrentSlotConflictError: If the patient holds several current slots
            PatientNotFoundError: If the patient no longer exists
        """
        now = self.clock()
        patient_id = patient.id
        slot_id = slot.id

        current = await current_slot_for(self.store, patient_id, now, self.config.time_zone)
        if current is None or current.id != slot_id:
            return CancelOutcome(
                result=CancelResult.NOT_CANCELABLE,
                message="Slot is not the patient's current appointment.",
            )

        fresh = await self.store.get_patient(patient_id)
        if fresh is None:
            raise PatientNotFoundError(f"Patient {patient_id} not found")
        decision = can_cancel_or_reschedule(fresh, current, now)
        if not decision:
            logger.info(
                f"Cancellation refused for patient {patient_id}: {decision.restriction.value}",
                extra={"patient_id": patient_id, "slot_id": slot_id},
            )
            return CancelOutcome(
                result=CancelResult.NOT_CANCELABLE,
                message=decision.message,
                decision=decision,
            )

        if not await self.store.release(slot_id, patient_id):
            # Checked out between the read and the write
            return CancelOutcome(
                result=CancelResult.NOT_CANCELABLE,
                message="Appointment changed state and can no longer be cancelled.",
            )

        await self.store.commit()
        await self.store.refresh(current)

        audit_logger.log(
            action="slot_released",
            patient_id=patient_id,
            slot_id=slot_id,
            metadata={"site_id": current.site_id},
        )

        return CancelOutcome(result=CancelResult.CANCELLED, message="Appointment cancelled.")
