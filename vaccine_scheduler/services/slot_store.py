"""Data access for slots, sites and patients.

Claims and releases are single conditional UPDATE statements, so the
database arbitrates races on a slot: PostgreSQL re-evaluates the WHERE clause
after the competing row lock is released, SQLite serialises writers. Reads
take no locks and may be stale by the time a claim runs; the claim's own
predicate is what decides.
"""

import logging
from collections.abc import Collection, Sequence
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from sqlalchemy.sql import Select

from vaccine_scheduler.models.patient import Patient
from vaccine_scheduler.models.site import Site
from vaccine_scheduler.models.slot import Slot
from vaccine_scheduler.utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class SlotStore:
    """SQLAlchemy-backed store used by the scheduling engine."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_patient(self, patient_id: str) -> Patient | None:
        """Load a patient with conditions and doses, bypassing stale state."""
        result = await self.session.execute(
            select(Patient)
            .where(Patient.id == patient_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_slot(self, slot_id: str) -> Slot | None:
        """Load a slot as currently stored."""
        result = await self.session.execute(
            select(Slot)
            .where(Slot.id == slot_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def current_slots(self, patient_id: str, since: datetime) -> Sequence[Slot]:
        """All unchecked-out slots held by the patient starting at or after ``since``.

        Uniqueness is an invariant the caller verifies; nothing here assumes it.
        """
        result = await self.session.execute(
            select(Slot)
            .where(
                Slot.patient_id == patient_id,
                Slot.check_out.is_(None),
                Slot.start >= since,
            )
            .order_by(Slot.start)
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    async def reschedule_site_ids(self) -> list[str]:
        """Ids of active sites accepting reschedule traffic."""
        result = await self.session.execute(
            select(Site.id).where(
                Site.active == True,
                Site.enabled_for_reschedule == True,
            )
        )
        return list(result.scalars().all())

    def _free_slots_query(
        self,
        query: Select,
        site_ids: Collection[str],
        from_: datetime,
        to: datetime,
        reschedule: bool,
        exclude_ids: Collection[str] = (),
    ) -> Select:
        """Restrict ``query`` to free slots: active site, unassigned, in range."""
        query = query.join(Site, Slot.site_id == Site.id).where(
            Site.active == True,
            Slot.active == True,
            Slot.patient_id.is_(None),
            Slot.check_out.is_(None),
            Slot.site_id.in_(list(site_ids)),
            Slot.start >= ensure_utc(from_),
            Slot.start <= ensure_utc(to),
        )

        if reschedule:
            query = query.where(Site.enabled_for_reschedule == True)

        if exclude_ids:
            query = query.where(Slot.id.not_in(list(exclude_ids)))

        return query

    async def free_slots_in_range(
        self,
        site_ids: Collection[str],
        from_: datetime,
        to: datetime,
        reschedule: bool = False,
        exclude_ids: Collection[str] = (),
    ) -> Sequence[Slot]:
        """Free slots at the given sites starting within ``[from_, to]``, by start."""
        query = (
            self._free_slots_query(select(Slot), site_ids, from_, to, reschedule, exclude_ids)
            .order_by(Slot.start, Slot.id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        return result.unique().scalars().all()

    async def earliest_free_start(
        self,
        site_ids: Collection[str],
        from_: datetime,
        to: datetime,
        reschedule: bool = False,
    ) -> datetime | None:
        """Start of the first free slot in ``[from_, to]``, or None."""
        query = self._free_slots_query(
            select(func.min(Slot.start)), site_ids, from_, to, reschedule
        )
        result = await self.session.execute(query)
        earliest = result.scalar_one_or_none()
        return ensure_utc(earliest) if earliest is not None else None

    async def count_free_slots(
        self,
        site_ids: Collection[str],
        from_: datetime,
        to: datetime,
        reschedule: bool = False,
    ) -> int:
        """Number of free slots in ``[from_, to]``."""
        query = self._free_slots_query(
            select(func.count(Slot.id)), site_ids, from_, to, reschedule
        )
        result = await self.session.execute(query)
        return result.scalar_one()

    async def lock_patient(self, patient_id: str) -> None:
        """Serialise booking transactions of one patient.

        Takes a row lock on PostgreSQL; SQLite has no row locks and serialises
        the claim itself instead.
        """
        await self.session.execute(
            select(Patient.id).where(Patient.id == patient_id).with_for_update()
        )

    async def try_claim(
        self,
        slot_id: str,
        patient_id: str,
        since: datetime,
        keep_slot_id: str | None = None,
    ) -> bool:
        """Assign a free slot to the patient if nobody holds it.

        The claim also fails if the patient meanwhile gained a current slot
        other than ``keep_slot_id`` (the one a reschedule is about to release).

        Args:
            slot_id: Slot to claim
            patient_id: Claiming patient
            since: Start of the local day; earlier slots are not current
            keep_slot_id: Current slot the caller already knows about

        Returns:
            True if this call took the slot, False if it was no longer free
        """
        active_sites = select(Site.id).where(Site.active == True)

        held = aliased(Slot)
        other_current = select(held.id).where(
            held.patient_id == patient_id,
            held.check_out.is_(None),
            held.start >= ensure_utc(since),
        )
        if keep_slot_id is not None:
            other_current = other_current.where(held.id != keep_slot_id)

        result = await self.session.execute(
            update(Slot)
            .where(
                Slot.id == slot_id,
                Slot.patient_id.is_(None),
                Slot.check_out.is_(None),
                Slot.active == True,
                Slot.site_id.in_(active_sites),
                ~other_current.exists(),
            )
            .values(patient_id=patient_id, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        claimed = result.rowcount == 1
        if not claimed:
            logger.debug(f"Claim lost for slot {slot_id}")
        return claimed

    async def release(self, slot_id: str, patient_id: str) -> bool:
        """Return the patient's unchecked-out slot to the free pool.

        Returns:
            True if the slot was released, False if the patient no longer
            held it or it has been checked out
        """
        result = await self.session.execute(
            update(Slot)
            .where(
                Slot.id == slot_id,
                Slot.patient_id == patient_id,
                Slot.check_out.is_(None),
            )
            .values(patient_id=None, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    async def refresh(self, slot: Slot) -> Slot:
        await self.session.refresh(slot)
        return slot
