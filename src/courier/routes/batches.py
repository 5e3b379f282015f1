"""
Batch Routes

Endpoints for batch lifecycle: create, membership, process, retry, cancel
and automatic collection.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from ..models.batch import BatchStatus
from ..services.engine_service import get_engine_service

logger = logging.getLogger("courier.routes.batches")
router = APIRouter(prefix="/batches", tags=["batches"])


# ============================================
# Request/Response Models
# ============================================

class CreateBatchRequest(BaseModel):
    name: Optional[str] = None
    notification_ids: List[str] = []


class AddMembersRequest(BaseModel):
    notification_ids: List[str]


class BatchResponse(BaseModel):
    """Batch response"""
    id: str
    name: str
    status: str
    total_count: int
    success_count: int
    failure_count: int
    errors: List[str]
    created_at: str
    started_at: Optional[str]
    completed_at: Optional[str]


# ============================================
# Routes
# ============================================

@router.post("", response_model=BatchResponse, status_code=201)
async def create_batch(request: CreateBatchRequest):
    """Create a batch, optionally with initial members"""
    engine = get_engine_service()
    batch = await engine.batch_service.create_batch(request.name)
    if request.notification_ids:
        batch = await engine.batch_service.add_members(batch.id, request.notification_ids)
    return BatchResponse(**batch.to_dict())


@router.get("")
async def list_batches(status: Optional[BatchStatus] = None, limit: int = 50, offset: int = 0):
    engine = get_engine_service()
    limit = max(1, min(limit, 100))
    batches, total = await engine.batch_service.list_batches(status=status, limit=limit, offset=max(0, offset))
    return {
        "batches": [BatchResponse(**b.to_dict()) for b in batches],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/health")
async def batch_health():
    """healthy / degraded / unhealthy"""
    engine = get_engine_service()
    return await engine.batch_service.health()


@router.post("/collect")
async def collect_batches(process: bool = True):
    """Group due normal/low priority notifications into per-channel batches"""
    engine = get_engine_service()
    if process:
        batches = await engine.batch_service.collect_and_process()
    else:
        batches = await engine.batch_service.collect()
    return {"batches": [BatchResponse(**b.to_dict()) for b in batches]}


@router.post("/pause")
async def pause_batches():
    engine = get_engine_service()
    await engine.batch_service.pause()
    return {"success": True, "paused": True}


@router.post("/resume")
async def resume_batches():
    engine = get_engine_service()
    await engine.batch_service.resume()
    return {"success": True, "paused": False}


@router.get("/{batch_id}", response_model=BatchResponse)
async def get_batch(batch_id: str):
    engine = get_engine_service()
    batch = await engine.batch_service.get_batch(batch_id)
    return BatchResponse(**batch.to_dict())


@router.get("/{batch_id}/notifications")
async def get_batch_notifications(batch_id: str):
    engine = get_engine_service()
    notifications = await engine.batch_service.get_notifications(batch_id)
    return [n.to_dict() for n in notifications]


@router.post("/{batch_id}/notifications", response_model=BatchResponse)
async def add_batch_members(batch_id: str, request: AddMembersRequest):
    engine = get_engine_service()
    batch = await engine.batch_service.add_members(batch_id, request.notification_ids)
    return BatchResponse(**batch.to_dict())


@router.post("/{batch_id}/process", response_model=BatchResponse)
async def process_batch(batch_id: str):
    """Process every member; returns the finished batch"""
    engine = get_engine_service()
    batch = await engine.batch_service.process(batch_id)
    return BatchResponse(**batch.to_dict())


@router.post("/{batch_id}/retry", response_model=BatchResponse, status_code=201)
async def retry_batch(batch_id: str, process: bool = False):
    """Create a new batch over the same notifications"""
    engine = get_engine_service()
    batch = await engine.batch_service.retry(batch_id)
    if process:
        batch = await engine.batch_service.process(batch.id)
    return BatchResponse(**batch.to_dict())


@router.post("/{batch_id}/cancel")
async def cancel_batch(batch_id: str):
    """Cancel a pending batch; cancelled=false once processing has started"""
    engine = get_engine_service()
    cancelled = await engine.batch_service.cancel(batch_id)
    return {"batch_id": batch_id, "cancelled": cancelled}
