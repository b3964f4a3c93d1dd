"""Bookable appointment slots.

A slot is created free by capacity provisioning, claimed by the booking
transaction, released by cancellation or reschedule, and checked out by the
check-in desk. Checked-out slots are terminal.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vaccine_scheduler.db.base import Base, TimestampMixin
from vaccine_scheduler.models.site import Site


class SlotState(str, Enum):
    """Observable lifecycle state of a slot."""

    FREE = "free"
    ASSIGNED = "assigned"
    CHECKED_OUT = "checked_out"


class Slot(Base, TimestampMixin):
    """Time range at one site, optionally assigned to one patient."""

    __tablename__ = "slots"
    __table_args__ = (
        Index("ix_slots_site_id_start", "site_id", "start"),
    )

    start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    end: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    site_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("sites.id", ondelete="RESTRICT"),
        nullable=False,
    )
    # The only field mutated concurrently; written by compare-and-swap
    patient_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("patients.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    check_out: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    # Capacity reserved for a follow-up dose rather than first doses
    follow_up_for_dose: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    site: Mapped["Site"] = relationship(
        "Site",
        lazy="joined",
    )

    @property
    def checked_out(self) -> bool:
        return self.check_out is not None

    @property
    def state(self) -> SlotState:
        if self.checked_out:
            return SlotState.CHECKED_OUT
        if self.patient_id is not None:
            return SlotState.ASSIGNED
        return SlotState.FREE

    def __repr__(self) -> str:
        return f"<Slot {self.id[:8]}... {self.start} state={self.state.value}>"
