"""Health check endpoints for container orchestration."""

from typing import Any

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse

from opsguard.database import check_database_connection
from opsguard.services.cron_scheduler import get_cron_scheduler

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=None)
async def health_check() -> Response:
    """
    Health check endpoint with database and scheduler status.

    Returns:
        200 {"status": "healthy", ...} when the database is reachable
        503 {"status": "degraded", ...} when it is not

    The scheduler flag is informational: a worker with the internal
    scheduler disabled is still healthy.
    """
    db_connected = await check_database_connection()
    content = {
        "status": "healthy" if db_connected else "degraded",
        "database": "connected" if db_connected else "disconnected",
        "scheduler": {"running": get_cron_scheduler().running},
    }

    return JSONResponse(
        status_code=(
            status.HTTP_200_OK
            if db_connected
            else status.HTTP_503_SERVICE_UNAVAILABLE
        ),
        content=content,
    )


@router.get("/health/live")
async def liveness_probe() -> dict[str, Any]:
    """Liveness probe; never checks external dependencies."""
    return {"status": "alive"}


@router.get("/health/ready", response_model=None)
async def readiness_probe() -> Response:
    """Readiness probe; ready once the database is reachable."""
    if await check_database_connection():
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": "connected"},
        )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "not_ready", "database": "disconnected"},
    )
