"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from collections.abc import AsyncGenerator, Callable, Sequence
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from vaccine_scheduler.api.deps import get_scheduler
from vaccine_scheduler.core.config import SchedulingConfig
from vaccine_scheduler.db.base import Base
from vaccine_scheduler.db.session import get_db
from vaccine_scheduler.main import app
from vaccine_scheduler.models import Condition, Dose, Patient, Site, Slot, Vaccine
from vaccine_scheduler.services.scheduler import AppointmentScheduler


# Use SQLite for testing (simpler than spinning up postgres)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Monday 08:00 UTC; the engine sees this as "now" throughout the suite
NOW = datetime(2030, 1, 7, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> Callable[[], datetime]:
    """Frozen clock handed to every scheduler under test."""
    return lambda: NOW


@pytest.fixture
def at() -> Callable[..., datetime]:
    """UTC datetime ``days`` after today at ``hour:minute``."""

    def _at(days: int, hour: int, minute: int = 0) -> datetime:
        midnight = NOW.replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight + timedelta(days=days, hours=hour, minutes=minute)

    return _at


@pytest.fixture
def config() -> SchedulingConfig:
    """Default engine configuration (15 minute tolerance, 5 claim attempts)."""
    return SchedulingConfig()


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def async_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with async_session_maker() as session:
        yield session


@pytest.fixture(scope="function")
async def file_engine(tmp_path):
    """File-backed SQLite engine; each session gets its own connection."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'slots.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(file_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory for tests that run callers concurrently."""
    return async_sessionmaker(
        file_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
def scheduler(
    async_session: AsyncSession,
    config: SchedulingConfig,
    clock: Callable[[], datetime],
) -> AppointmentScheduler:
    """Scheduler bound to the test session and frozen clock."""
    return AppointmentScheduler(async_session, config, clock)


@pytest.fixture
async def client(
    async_session: AsyncSession,
    config: SchedulingConfig,
    clock: Callable[[], datetime],
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with the database and clock overridden."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield async_session

    def override_get_scheduler() -> AppointmentScheduler:
        return AppointmentScheduler(async_session, config, clock)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_scheduler] = override_get_scheduler

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_site(async_session: AsyncSession):
    """Create a site."""

    async def _make_site(
        name: str = "Central",
        active: bool = True,
        enabled_for_reschedule: bool = False,
    ) -> Site:
        site = Site(
            name=name,
            active=active,
            enabled_for_reschedule=enabled_for_reschedule,
        )
        async_session.add(site)
        await async_session.commit()
        return site

    return _make_site


@pytest.fixture
def make_condition(async_session: AsyncSession):
    """Create a condition granting access to ``sites``."""

    async def _make_condition(name: str, sites: Sequence[Site], active: bool = True) -> Condition:
        condition = Condition(name=name, sites=list(sites), active=active)
        async_session.add(condition)
        await async_session.commit()
        return condition

    return _make_condition


@pytest.fixture
def make_slot(async_session: AsyncSession):
    """Create a 20 minute slot (or longer) at ``site`` starting at ``start``."""

    async def _make_slot(
        site: Site,
        start: datetime,
        minutes: int = 20,
        patient: Patient | None = None,
        **kwargs,
    ) -> Slot:
        slot = Slot(
            site=site,
            start=start,
            end=start + timedelta(minutes=minutes),
            patient_id=patient.id if patient is not None else None,
            **kwargs,
        )
        async_session.add(slot)
        await async_session.commit()
        return slot

    return _make_slot


@pytest.fixture
def make_patient(async_session: AsyncSession):
    """Create a patient, optionally with conditions and dose history.

    ``dose_slots`` lists the slots at which past doses were given; use None
    entries for doses recorded elsewhere.
    """
    vaccines: list[Vaccine] = []

    async def _make_patient(
        name: str = "Ana",
        conditions: Sequence[Condition] = (),
        dose_slots: Sequence[Slot | None] = (),
        vaccinated: bool = False,
        force_user_update: bool = False,
        reschedule_condition_met: bool = False,
    ) -> Patient:
        if not vaccines:
            vaccines.append(Vaccine(name="CoronaVac", second_dose_after_in_days=28))
            async_session.add(vaccines[0])

        patient = Patient(
            name=name,
            document=uuid4().hex[:11],
            vaccinated=vaccinated,
            force_user_update=force_user_update,
            reschedule_condition_met=reschedule_condition_met,
            conditions=list(conditions),
            doses=[
                Dose(vaccine=vaccines[0], slot=slot, sequence_number=number)
                for number, slot in enumerate(dose_slots, start=1)
            ],
        )
        async_session.add(patient)
        await async_session.commit()
        return patient

    return _make_patient


@pytest.fixture
def past_slot(make_slot, at):
    """Create an already checked-out slot (where an earlier dose was given)."""

    async def _past_slot(site: Site, patient: Patient | None = None) -> Slot:
        return await make_slot(site, at(-28, 10), patient=patient, check_out=at(-28, 10, 30))

    return _past_slot
