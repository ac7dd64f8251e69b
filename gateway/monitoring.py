"""
Health check endpoints for the scan gateway.
"""
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel

router = APIRouter(tags=["monitoring"])

START_TIME = time.time()
VERSION = "0.1.0"


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    timestamp: str
    uptime_seconds: float
    version: str
    component: str


class ReadinessResponse(BaseModel):
    """Readiness check response model."""

    ready: bool
    checks: Dict[str, Dict[str, Any]]


@router.get("/health", response_model=HealthResponse, status_code=status.HTTP_200_OK)
async def health_check() -> HealthResponse:
    """Returns 200 OK while the process is serving requests."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=round(time.time() - START_TIME, 2),
        version=VERSION,
        component="gateway",
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request, response: Response) -> ReadinessResponse:
    """
    Readiness check endpoint.
    Verifies the records database location and the scan pool.
    """
    checks: Dict[str, Dict[str, Any]] = {}
    all_ready = True

    db_path = getattr(request.app.state, "db_path", None) or os.getenv("PAGESCAN_DB_PATH", "/data/pagescan.db")
    path = Path(db_path)
    if path.exists():
        checks["database"] = {"status": "ok", "path": db_path, "exists": True}
    elif path.parent.exists():
        checks["database"] = {
            "status": "warning",
            "path": db_path,
            "exists": False,
            "message": "Database will be created on first scan",
        }
    else:
        checks["database"] = {"status": "error", "path": db_path, "exists": False}
        all_ready = False

    pool = getattr(request.app.state, "pool", None)
    if pool is None:
        checks["scan_pool"] = {"status": "error", "available": False}
        all_ready = False
    else:
        checks["scan_pool"] = {
            "status": "ok",
            "available": True,
            "max_workers": pool.max_workers,
            "max_queued": pool.max_queued,
            "in_flight": pool.in_flight,
        }

    if not all_ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessResponse(ready=all_ready, checks=checks)
