"""Health check endpoints for load balancers and monitoring."""

import os
from datetime import datetime, timezone

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from stockalert.middleware.exceptions import PersistenceError

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Lightweight liveness check (no backend access)."""
    return {
        "status": "ok",
        "service": "stockalert",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": os.getenv("ENVIRONMENT", "development"),
    }


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness: engine loaded and state backend reachable.

    A degraded backend still reports the engine as serving (it runs in
    memory) but flips the overall status to 503.
    """
    checks = {
        "engine": "unknown",
        "state_backend": "unknown",
    }
    overall_healthy = True

    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        checks["engine"] = "not started"
        overall_healthy = False
    else:
        checks["engine"] = "ok"
        try:
            await engine.repository.backend.ping()
            checks["state_backend"] = "degraded" if engine.persistence_degraded else "ok"
            overall_healthy = not engine.persistence_degraded
        except PersistenceError as e:
            checks["state_backend"] = f"error: {e.message[:100]}"
            overall_healthy = False

    return JSONResponse(
        status_code=status.HTTP_200_OK if overall_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if overall_healthy else "not ready",
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
