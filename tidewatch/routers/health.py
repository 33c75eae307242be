"""Health check endpoints for container orchestration."""

from typing import Any

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse

from tidewatch.core.migrations import check_migrations_current
from tidewatch.database import check_database_connection
from tidewatch.services.scheduler import get_scheduler

router = APIRouter(tags=["Health"])


def _scheduler_state() -> str:
    sched = get_scheduler()
    return "running" if sched is not None and sched.running else "stopped"


@router.get("/health", response_model=None)
async def health_check() -> Response:
    """
    Health check with database and scheduler status.

    Returns 200 with {"status": "healthy"} when the database answers, 503
    with {"status": "degraded"} otherwise. A stopped scheduler is reported
    but does not fail the check; the recovery sweep catches up on restart.
    Migration state is informational as well.
    """
    db_connected = await check_database_connection()
    content = {
        "status": "healthy" if db_connected else "degraded",
        "database": "connected" if db_connected else "disconnected",
        "scheduler": _scheduler_state(),
        "migrations": "current" if await check_migrations_current() else "pending",
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
    """Liveness probe: the process is up. No dependency checks."""
    return {"status": "alive"}


@router.get("/health/ready", response_model=None)
async def readiness_probe() -> Response:
    """Readiness probe: the database is reachable."""
    if await check_database_connection():
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": "connected"},
        )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "not_ready", "database": "disconnected"},
    )
