"""API v1 router aggregating all endpoints."""

from fastapi import APIRouter

from vaccine_scheduler.api.v1 import appointments, health

api_router = APIRouter()

# Health check
api_router.include_router(
    health.router,
    prefix="/health",
    tags=["health"],
)

# Patient scheduling
api_router.include_router(
    appointments.router,
    prefix="/appointments",
    tags=["appointments"],
)
