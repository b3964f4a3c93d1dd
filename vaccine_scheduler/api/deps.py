"""FastAPI dependency injection utilities."""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from vaccine_scheduler.core.config import SchedulingConfig, settings
from vaccine_scheduler.db.session import get_db
from vaccine_scheduler.models.patient import Patient
from vaccine_scheduler.services.scheduler import AppointmentScheduler


def get_scheduling_config() -> SchedulingConfig:
    """Engine configuration, built once per request from settings."""
    return settings.scheduling_config()


async def get_scheduler(
    session: Annotated[AsyncSession, Depends(get_db)],
    config: Annotated[SchedulingConfig, Depends(get_scheduling_config)],
) -> AppointmentScheduler:
    """Scheduler bound to the request's session."""
    return AppointmentScheduler(session, config)


async def get_current_patient(
    scheduler: Annotated[AppointmentScheduler, Depends(get_scheduler)],
    x_patient_id: Annotated[str | None, Header()] = None,
) -> Patient:
    """Get the patient resolved by the upstream identity layer.

    Args:
        scheduler: Request scheduler
        x_patient_id: Patient id set by the gateway after authentication

    Returns:
        Patient

    Raises:
        HTTPException: If no patient id was supplied or it is unknown
    """
    if not x_patient_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    try:
        UUID(x_patient_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid patient id",
        )

    patient = await scheduler.get_patient(x_patient_id)
    if patient is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Patient not found",
        )

    return patient


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
Scheduler = Annotated[AppointmentScheduler, Depends(get_scheduler)]
CurrentPatient = Annotated[Patient, Depends(get_current_patient)]
