"""
Queue Routes

Broker metrics and pause/resume of automatic processing.
"""
from fastapi import APIRouter

from ..services.engine_service import get_engine_service

router = APIRouter(prefix="/queue", tags=["queue"])


@router.get("/metrics")
async def get_queue_metrics():
    engine = get_engine_service()
    metrics = await engine.notification_service.get_queue_metrics()
    return metrics.to_dict()


@router.post("/pause")
async def pause_queue():
    engine = get_engine_service()
    await engine.notification_service.pause_processing()
    return {"success": True, "paused": True}


@router.post("/resume")
async def resume_queue():
    engine = get_engine_service()
    await engine.notification_service.resume_processing()
    return {"success": True, "paused": False}
