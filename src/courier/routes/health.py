"""
Health Check Routes

Endpoints for service health monitoring.
"""
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from ..models.notification import utcnow
from ..services.engine_service import get_engine_service

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
@router.get("/")
async def health_check():
    """Basic health check endpoint"""
    return {
        "status": "healthy",
        "service": "courier",
        "timestamp": utcnow().isoformat()
    }


@router.get("/ready")
async def readiness_check():
    """
    Readiness check - engine initialized and broker reachable.
    Used by Kubernetes/orchestrators for readiness probes.
    """
    engine = get_engine_service()
    broker_ok = await engine.broker.ping()
    ready = engine.is_initialized and broker_ok
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "ready": ready,
            "broker": {"name": engine.broker.name, "connected": broker_ok},
            "timestamp": utcnow().isoformat()
        },
    )


@router.get("/live")
async def liveness_check():
    """
    Liveness check - indicates if service is running.
    Used by Kubernetes/orchestrators for liveness probes.
    """
    return {
        "alive": True,
        "timestamp": utcnow().isoformat()
    }
