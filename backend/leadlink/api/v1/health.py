"""
Health check endpoint for monitoring and load balancers.
Checks the database and the Kommo API.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text

from leadlink.api.deps import get_engine
from leadlink.core.config import settings
from leadlink.services.engine import AttributionEngine

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("")
async def health_check(engine: AttributionEngine = Depends(get_engine)):
    """
    Health check for the database and the CRM.

    Returns:
        - status: "healthy" if the database answers, "unhealthy" otherwise
        - checks: Dict of individual service statuses
        - version: App version
        - environment: Current environment (development/production)

    HTTP Status Codes:
        - 200: Database healthy (Kommo problems are reported, not fatal)
        - 503: Database unhealthy
    """
    health_status = {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": {}
    }

    # Check database
    try:
        async with engine.session_maker() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
        health_status["checks"]["database"] = {"status": "healthy"}
    except Exception as e:
        health_status["checks"]["database"] = {
            "status": "unhealthy",
            "error": str(e)
        }
        health_status["status"] = "unhealthy"

    # Check Kommo (clicks keep being recorded while it is down)
    if not engine.client.configured:
        health_status["checks"]["kommo"] = {
            "status": "unavailable",
            "message": "Kommo not configured"
        }
    elif await engine.client.test_connection():
        health_status["checks"]["kommo"] = {"status": "healthy"}
    else:
        health_status["checks"]["kommo"] = {"status": "unhealthy"}

    health_status["background_registrations"] = engine.registrar.pending_tasks

    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status


@router.get("/ready")
async def readiness_check(engine: AttributionEngine = Depends(get_engine)):
    """
    Kubernetes-style readiness probe.
    Returns 200 if the service is ready to accept traffic.
    """
    try:
        async with engine.session_maker() as session:
            await session.execute(text("SELECT 1"))
        return {"status": "ready"}
    except Exception as e:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "error": str(e)}
        )


@router.get("/live")
async def liveness_check():
    """
    Kubernetes-style liveness probe.
    Returns 200 if the service is alive (no deadlock, no infinite loop).
    """
    return {"status": "alive", "version": settings.app_version}
