"""
Health Check Endpoints

Provides health and readiness checks for orchestration systems.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel

from pricefeed.config import get_settings
from pricefeed.database.connection import check_database_health

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    environment: str
    timestamp: datetime
    checks: Dict[str, Any]


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """
    Health check endpoint.

    Checks:
    - Database connectivity
    - Ingestion scheduler loop
    """
    settings = get_settings()
    checks = {}
    overall_status = "healthy"

    db_health = await check_database_health()
    checks["database"] = db_health
    if db_health.get("status") != "healthy":
        overall_status = "unhealthy"

    services = getattr(request.app.state, "services", None)
    if services is None:
        checks["scheduler"] = {"status": "unavailable"}
        if overall_status == "healthy":
            overall_status = "degraded"
    else:
        scheduler = services.scheduler
        checks["scheduler"] = {
            "status": "running" if scheduler.is_running else "idle",
            "busy": scheduler.is_busy,
            "pending": scheduler.pending_count,
        }

    return HealthResponse(
        status=overall_status,
        version=settings.version,
        environment=settings.app_env,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """Returns 200 while the process is serving requests."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(request: Request, response: Response) -> Dict[str, str]:
    """Returns 200 once the database is reachable and services are wired."""
    if getattr(request.app.state, "services", None) is None:
        response.status_code = 503
        return {"status": "not_ready", "reason": "services_unavailable"}

    db_health = await check_database_health()
    if db_health.get("status") != "healthy":
        response.status_code = 503
        return {"status": "not_ready", "reason": "database_unavailable"}

    return {"status": "ready"}
