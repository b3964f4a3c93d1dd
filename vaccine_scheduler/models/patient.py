"""Patient, vaccine and dose records.

Includes:
- Patient: identity plus the eligibility flags the scheduler reads
- Vaccine: vaccine type and its inter-dose interval
- Dose: one administered vaccination, linked to the slot it was given at
"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Table,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vaccine_scheduler.db.base import Base, TimestampMixin
from vaccine_scheduler.models.site import Condition

patient_conditions = Table(
    "patient_conditions",
    Base.metadata,
    Column(
        "patient_id",
        Uuid(as_uuid=False),
        ForeignKey("patients.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "condition_id",
        Uuid(as_uuid=False),
        ForeignKey("conditions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class Patient(Base, TimestampMixin):
    """Person seeking a vaccination series.

    The scheduling flags are maintained outside the engine: profile review
    sets ``force_user_update``, the dose registry sets ``vaccinated`` and
    computes ``reschedule_condition_met`` from the inter-dose interval.
    """

    __tablename__ = "patients"

    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )
    # National document number (CPF, passport...)
    document: Mapped[str] = mapped_column(
        String(20),
        unique=True,
        nullable=False,
        index=True,
    )
    # Pending mandatory profile update blocks scheduling
    force_user_update: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    # Series complete
    vaccinated: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    reschedule_condition_met: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    # When reschedule_condition_met is expected to flip (shown to the patient)
    change_reschedule_after: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    conditions: Mapped[list["Condition"]] = relationship(
        "Condition",
        secondary=patient_conditions,
        lazy="selectin",
    )
    doses: Mapped[list["Dose"]] = relationship(
        "Dose",
        back_populates="patient",
        order_by="Dose.sequence_number",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def has_doses(self) -> bool:
        return len(self.doses) > 0

    def __repr__(self) -> str:
        return f"<Patient {self.id[:8]}... doses={len(self.doses)}>"


class Vaccine(Base, TimestampMixin):
    """Vaccine type."""

    __tablename__ = "vaccines"

    name: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
    )
    second_dose_after_in_days: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Vaccine {self.name}>"


class Dose(Base, TimestampMixin):
    """Administered vaccination, ordered by sequence within a series."""

    __tablename__ = "doses"
    __table_args__ = (
        UniqueConstraint("patient_id", "sequence_number", name="uq_doses_patient_sequence"),
    )

    patient_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    vaccine_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("vaccines.id", ondelete="RESTRICT"),
        nullable=False,
    )
    # Slot at which the dose was given; None when recorded from elsewhere
    slot_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("slots.id", ondelete="SET NULL"),
        nullable=True,
    )
    sequence_number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    patient: Mapped["Patient"] = relationship(
        "Patient",
        back_populates="doses",
    )
    vaccine: Mapped["Vaccine"] = relationship(
        "Vaccine",
        lazy="joined",
    )
    slot: Mapped["Slot | None"] = relationship(
        "Slot",
        lazy="joined",
    )

    def __repr__(self) -> str:
        return f"<Dose {self.sequence_number} patient={self.patient_id[:8]}...>"


# Import for type hints
from vaccine_scheduler.models.slot import Slot  # noqa: E402
