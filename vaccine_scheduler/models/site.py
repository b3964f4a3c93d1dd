"""Vaccination sites and the eligibility conditions that open them.

A Condition (priority group, age bracket, occupation...) is admin data; a
patient who meets it may book first doses at the sites it lists.
"""

from sqlalchemy import Boolean, Column, ForeignKey, String, Table, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vaccine_scheduler.db.base import Base, TimestampMixin

condition_sites = Table(
    "condition_sites",
    Base.metadata,
    Column(
        "condition_id",
        Uuid(as_uuid=False),
        ForeignKey("conditions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "site_id",
        Uuid(as_uuid=False),
        ForeignKey("sites.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class Site(Base, TimestampMixin):
    """Physical location offering vaccination slots."""

    __tablename__ = "sites"

    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )
    address: Mapped[str | None] = mapped_column(
        String(300),
        nullable=True,
    )
    # Inactive sites offer no slots
    active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
        index=True,
    )
    # Accepts reschedule traffic (patients with dose history)
    enabled_for_reschedule: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Site {self.name} active={self.active}>"


class Condition(Base, TimestampMixin):
    """Eligibility grouping mapping to the sites it grants access to."""

    __tablename__ = "conditions"

    name: Mapped[str] = mapped_column(
        String(200),
        unique=True,
        nullable=False,
    )
    active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    sites: Mapped[list["Site"]] = relationship(
        "Site",
        secondary=condition_sites,
        lazy="selectin",
    )

    @property
    def site_ids(self) -> list[str]:
        return [site.id for site in self.sites]

    def __repr__(self) -> str:
        return f"<Condition {self.name}>"
