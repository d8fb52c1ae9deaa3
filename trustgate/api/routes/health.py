"""
Health Check Endpoints.

Provides health status for the API and its dependencies.
"""
import time
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from ..models import HealthStatus
from ..deps import get_db, get_redis_client
from ...database.auth_db import AuthDB
from ...utils.config import get_settings

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["Health"])


@router.get("", response_model=HealthStatus)
async def health_check(db: AuthDB = Depends(get_db)):
    """
    Basic health check endpoint.

    Returns overall system status. A missing trusted device table is
    reported but does not make the service unhealthy (logins still work in
    degraded trust mode).
    """
    services = {}
    overall_healthy = True

    # Check PostgreSQL
    try:
        start = time.time()
        with db.get_session() as session:
            session.execute(text("SELECT 1"))
        latency = (time.time() - start) * 1000
        services["postgresql"] = f"healthy ({latency:.1f}ms)"

        if db.has_trusted_devices_table():
            services["trusted_devices"] = "healthy"
        else:
            services["trusted_devices"] = "degraded (table missing)"
    except Exception as e:
        services["postgresql"] = f"unhealthy: {str(e)}"
        overall_healthy = False

    # Check Redis
    try:
        redis_client = get_redis_client()
        if redis_client:
            start = time.time()
            redis_client.ping()
            latency = (time.time() - start) * 1000
            services["redis"] = f"healthy ({latency:.1f}ms)"
        else:
            services["redis"] = "fallback_mode (in-memory)"
    except Exception as e:
        services["redis"] = f"unhealthy: {str(e)}"
        # Redis failure is not critical - we have in-memory fallback

    return HealthStatus(
        status="healthy" if overall_healthy else "unhealthy",
        version=get_settings().app_version,
        services=services,
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/live")
async def liveness():
    """
    Kubernetes liveness probe.

    Returns 200 if the service is running.
    """
    return {"status": "alive"}


@router.get("/ready")
async def readiness(db: AuthDB = Depends(get_db)):
    """
    Kubernetes readiness probe.

    Returns 200 if the database answers, 503 otherwise.
    """
    try:
        with db.get_session() as session:
            session.execute(text("SELECT 1"))
        return {"status": "ready"}
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not ready", "error": str(e)},
        )
