"""Database initialization utilities."""

import logging
from datetime import datetime, time, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vaccine_scheduler.db.base import Base
from vaccine_scheduler.db.session import engine
from vaccine_scheduler.models.site import Condition, Site
from vaccine_scheduler.models.slot import Slot
from vaccine_scheduler.utils.time import utc_now

logger = logging.getLogger(__name__)


async def create_tables() -> None:
    """Create all database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")


async def drop_tables() -> None:
    """Drop all database tables (use with caution)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.info("Database tables dropped")


def provision_slots(
    site: Site,
    day: datetime,
    opens: time,
    closes: time,
    duration: timedelta,
) -> list[Slot]:
    """Back-to-back free slots for one site and day (UTC)."""
    slots = []
    current = datetime.combine(day.date(), opens, tzinfo=timezone.utc)
    closing = datetime.combine(day.date(), closes, tzinfo=timezone.utc)

    while current + duration <= closing:
        slots.append(Slot(site=site, start=current, end=current + duration))
        current += duration

    return slots


async def seed_demo_capacity(session: AsyncSession, days: int = 7) -> list[Site] | None:
    """Create demo sites, a condition and a week of slots.

    Args:
        session: Database session
        days: Number of days of capacity to provision

    Returns:
        Created sites, or None if sites already exist
    """
    result = await session.execute(select(Site).limit(1))
    if result.scalar_one_or_none():
        logger.info("Sites already exist, skipping demo seed")
        return None

    sites = [
        Site(name="Central Health Unit", address="1 Main Street", enabled_for_reschedule=True),
        Site(name="North Health Unit", address="20 North Avenue", enabled_for_reschedule=False),
    ]
    session.add_all(sites)
    session.add(Condition(name="Adults 60+", sites=sites))

    tomorrow = utc_now() + timedelta(days=1)
    for offset in range(days):
        day = tomorrow + timedelta(days=offset)
        for site in sites:
            session.add_all(
                provision_slots(site, day, time(9, 0), time(12, 0), timedelta(minutes=20))
            )

    await session.commit()
    logger.info(f"Seeded {len(sites)} demo sites with {days} days of slots")
    return sites


async def init_db(session: AsyncSession, seed_demo_data: bool = False) -> None:
    """Initialize database with required data.

    Args:
        session: Database session
        seed_demo_data: Also provision demo sites and slots
    """
    await create_tables()
    if seed_demo_data:
        await seed_demo_capacity(session)
    logger.info("Database initialization complete")
