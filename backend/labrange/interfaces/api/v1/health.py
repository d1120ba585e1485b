"""
Lab Range - Health Check Endpoints
Database, libvirt, network pool and session disk monitoring
"""

import os
import shutil
import time
from typing import Any, Awaitable, Dict

import structlog
from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel

from labrange.infrastructure.database import DatabaseManager
from labrange.infrastructure.orchestrator.models import utcnow
from labrange.infrastructure.orchestrator.services.session_manager import SessionManager

logger = structlog.get_logger(__name__)

router = APIRouter()


class HealthStatus(BaseModel):
    """Health check response model."""
    status: str
    timestamp: str
    version: str
    checks: Dict[str, Any]


async def get_db_manager(request: Request) -> DatabaseManager:
    return request.app.state.db


async def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


async def timed(probe: Awaitable[Dict[str, Any]]) -> Dict[str, Any]:
    """Run a probe and attach its latency."""
    start = time.monotonic()
    result = await probe
    return {**result, "latency_ms": round((time.monotonic() - start) * 1000, 2)}


@router.get(
    "",
    response_model=HealthStatus,
    summary="Health Check",
    description="Database, hypervisor, network pool and disk status",
)
async def health_check(
    request: Request,
    db: DatabaseManager = Depends(get_db_manager),
    manager: SessionManager = Depends(get_session_manager),
) -> HealthStatus:
    """
    Report on everything a session start depends on.

    The host is "degraded" when the database or libvirt is unreachable or
    the session disk volume is filling up.
    """
    settings = request.app.state.settings

    checks: Dict[str, Any] = {
        "database": await timed(db.health_check()),
        "hypervisor": await timed(manager.hypervisor.ping()),
        "disk": check_disk_health(str(settings.session_disks_dir)),
        "network_pools": manager.allocator.snapshot(),
        "active_sessions": await manager.repository.count_active(),
    }

    degraded = [
        name for name in ("database", "hypervisor", "disk")
        if checks[name]["status"] != "healthy"
    ]
    if degraded:
        logger.warning("Health check degraded", components=degraded)

    return HealthStatus(
        status="degraded" if degraded else "healthy",
        timestamp=utcnow().isoformat(),
        version=settings.app_version,
        checks=checks,
    )


@router.get(
    "/live",
    status_code=status.HTTP_200_OK,
    summary="Liveness Probe",
)
async def liveness() -> Dict[str, str]:
    """Returns 200 while the process is serving requests."""
    return {"status": "alive"}


@router.get(
    "/ready",
    summary="Readiness Probe",
)
async def readiness(
    response: Response,
    db: DatabaseManager = Depends(get_db_manager),
    manager: SessionManager = Depends(get_session_manager),
) -> Dict[str, str]:
    """Returns 503 until both the database and libvirt answer."""
    if (await db.health_check())["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "reason": "database"}

    if (await manager.hypervisor.ping())["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "reason": "hypervisor"}

    return {"status": "ready"}


def check_disk_health(
    path: str,
    warning_threshold: float = 0.8,
    critical_threshold: float = 0.95,
) -> Dict[str, Any]:
    """
    Report free space on the volume holding session overlay disks.

    Falls back to / when the directory has not been created yet.
    """
    check_path = path if os.path.exists(path) else "/"
    try:
        total, used, free = shutil.disk_usage(check_path)
    except OSError as e:
        logger.error("Disk health check failed", path=check_path, error=str(e))
        return {"status": "unhealthy", "error": str(e)}

    usage_ratio = used / total
    if usage_ratio >= critical_threshold:
        state = "critical"
    elif usage_ratio >= warning_threshold:
        state = "warning"
    else:
        state = "healthy"

    return {
        "status": state,
        "path": check_path,
        "free_gb": round(free / (1024**3), 2),
        "usage_percent": round(usage_ratio * 100, 1),
    }
