"""Health check endpoint."""

import time

from fastapi import APIRouter

from pwa_maker import __version__
from pwa_maker.api.response import success_response
from pwa_maker.models import HealthData

router = APIRouter(prefix="/api", tags=["System"])

START_TIME = time.monotonic()


@router.get("/health")
async def health_check() -> dict:
    """Return system health status, version and uptime in seconds."""
    return success_response(
        HealthData(version=__version__, uptime=int(time.monotonic() - START_TIME))
    )
