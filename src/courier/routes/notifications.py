"""
Notification Routes

Endpoints for notification creation, lookup, lifecycle and delivery control.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from ..models.notification import (
    HealthcareMetadata,
    NotificationChannel,
    NotificationContent,
    NotificationMetadata,
    NotificationPriority,
    NotificationRecipient,
    NotificationStatus,
)
from ..services.engine_service import get_engine_service
from ..storage.notification_storage import NotificationFilters

logger = logging.getLogger("courier.routes.notifications")
router = APIRouter(prefix="/notifications", tags=["notifications"])


# ============================================
# Request Models
# ============================================

class RecipientModel(BaseModel):
    """Addressing info; populate the field matching the channel"""
    id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    device_token: Optional[str] = None
    chat_user_id: Optional[str] = None
    chat_channel: Optional[str] = None
    webhook_url: Optional[str] = None

    def to_recipient(self) -> NotificationRecipient:
        return NotificationRecipient(**self.model_dump())


class ContentModel(BaseModel):
    text: str = ""
    html: Optional[str] = None
    template: Optional[str] = None
    template_data: Optional[Dict[str, Any]] = None

    def to_content(self) -> NotificationContent:
        return NotificationContent(**self.model_dump())


class CreateNotificationRequest(BaseModel):
    """Create notification request"""
    type: str
    channel: NotificationChannel
    recipient: RecipientModel
    content: ContentModel
    priority: NotificationPriority = NotificationPriority.NORMAL
    subject: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None
    tags: List[str] = []
    max_attempts: Optional[int] = None
    process_immediately: bool = False


class HealthcareModel(BaseModel):
    patient_id: Optional[str] = None
    provider_id: Optional[str] = None
    appointment_id: Optional[str] = None
    facility_id: Optional[str] = None
    department: Optional[str] = None
    urgency: Optional[str] = None              # 'low', 'medium', 'high', 'critical'
    hipaa_compliant: bool = True
    encryption_enabled: bool = False


class CreateHealthcareNotificationRequest(BaseModel):
    """Create healthcare notification request"""
    type: str
    channel: NotificationChannel
    recipient: RecipientModel
    content: ContentModel
    healthcare: HealthcareModel
    priority: NotificationPriority = NotificationPriority.NORMAL
    scheduled_at: Optional[datetime] = None
    tags: List[str] = []
    process_immediately: bool = False


class UpdateStatusRequest(BaseModel):
    status: NotificationStatus


class EnqueueRequest(BaseModel):
    """Manual enqueue request"""
    delay_ms: int = 0
    priority: Optional[NotificationPriority] = None
    attempts: Optional[int] = None


# ============================================
# Creation
# ============================================

@router.post("", status_code=201)
async def create_notification(request: CreateNotificationRequest):
    """Create a notification (status 'queued')"""
    engine = get_engine_service()
    notification = await engine.notification_service.create_notification(
        type=request.type,
        channel=request.channel,
        recipient=request.recipient.to_recipient(),
        content=request.content.to_content(),
        priority=request.priority,
        subject=request.subject,
        scheduled_at=request.scheduled_at,
        metadata=NotificationMetadata.from_dict(request.metadata) if request.metadata else None,
        tags=request.tags,
        max_attempts=request.max_attempts,
        process_immediately=request.process_immediately,
    )
    return notification.to_dict()


@router.post("/healthcare", status_code=201)
async def create_healthcare_notification(request: CreateHealthcareNotificationRequest):
    """Create a notification with healthcare metadata"""
    engine = get_engine_service()
    notification = await engine.notification_service.create_healthcare_notification(
        type=request.type,
        channel=request.channel,
        recipient=request.recipient.to_recipient(),
        content=request.content.to_content(),
        healthcare=HealthcareMetadata(**request.healthcare.model_dump()),
        priority=request.priority,
        scheduled_at=request.scheduled_at,
        tags=request.tags,
        process_immediately=request.process_immediately,
    )
    return notification.to_dict()


# ============================================
# Queries
# ============================================

@router.get("")
async def list_notifications(
    status: Optional[NotificationStatus] = None,
    priority: Optional[NotificationPriority] = None,
    channel: Optional[NotificationChannel] = None,
    type: Optional[str] = None,
    recipient_id: Optional[str] = None,
    recipient_email: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    tags: List[str] = Query(default=[]),
    limit: int = 50,
    offset: int = 0,
):
    """List notifications, newest first (limit capped at 100)"""
    engine = get_engine_service()
    filters = NotificationFilters(
        status=status,
        priority=priority,
        channel=channel,
        type=type,
        recipient_id=recipient_id,
        recipient_email=recipient_email,
        date_from=date_from,
        date_to=date_to,
        tags=tags,
        limit=limit,
        offset=offset,
    )
    items, total = await engine.notification_service.list_notifications(filters)
    return {
        "notifications": [n.to_dict() for n in items],
        "total": total,
        "limit": filters.limit,
        "offset": filters.offset,
    }


@router.get("/queued")
async def get_queued_notifications(priority: Optional[NotificationPriority] = None, limit: int = 100):
    """Due queued notifications, most urgent first"""
    engine = get_engine_service()
    items = await engine.notification_service.get_queued_notifications(priority, min(limit, 100))
    return [n.to_dict() for n in items]


@router.get("/scheduled")
async def get_scheduled_notifications(before: Optional[datetime] = None, limit: int = 100):
    """Queued notifications scheduled at or before `before` (default now)"""
    engine = get_engine_service()
    items = await engine.notification_service.get_scheduled_notifications(before, min(limit, 100))
    return [n.to_dict() for n in items]


@router.get("/{notification_id}")
async def get_notification(notification_id: str):
    engine = get_engine_service()
    notification = await engine.notification_service.get_notification(notification_id)
    return notification.to_dict()


@router.get("/{notification_id}/errors")
async def get_notification_errors(notification_id: str):
    """Delivery errors for a notification, oldest first"""
    engine = get_engine_service()
    errors = await engine.notification_service.get_notification_errors(notification_id)
    return [e.to_dict() for e in errors]


# ============================================
# Lifecycle
# ============================================

@router.patch("/{notification_id}/status")
async def update_status(notification_id: str, request: UpdateStatusRequest):
    """Status change through the state machine (409 when not allowed)"""
    engine = get_engine_service()
    notification = await engine.notification_service.update_status(notification_id, request.status)
    return notification.to_dict()


@router.post("/{notification_id}/cancel")
async def cancel_notification(notification_id: str):
    """Cancel a queued notification (409 once processing has started)"""
    engine = get_engine_service()
    result = await engine.notification_service.cancel(notification_id)
    if not result.applied:
        raise HTTPException(
            status_code=409,
            detail=f"Cancel not applicable: notification is {result.notification.status.value}",
        )
    return result.to_dict()


@router.delete("/{notification_id}")
async def delete_notification(notification_id: str):
    """Administrative delete"""
    engine = get_engine_service()
    await engine.notification_service.delete_notification(notification_id)
    return {"success": True, "message": f"Notification '{notification_id}' deleted"}


@router.post("/{notification_id}/process")
async def process_notification(notification_id: str):
    """Run one delivery attempt now"""
    engine = get_engine_service()
    sent = await engine.notification_service.process_notification(notification_id)
    notification = await engine.notification_service.get_notification(notification_id)
    return {"success": sent, "notification": notification.to_dict()}


@router.post("/{notification_id}/enqueue")
async def enqueue_notification(notification_id: str, request: EnqueueRequest):
    """Submit a queued notification to the broker"""
    engine = get_engine_service()
    job_id = await engine.notification_service.queue_for_processing(
        notification_id,
        delay_ms=request.delay_ms,
        priority=request.priority,
        attempts=request.attempts,
    )
    return {"success": True, "job_id": job_id}


@router.post("/{notification_id}/delivered")
async def confirm_delivery(notification_id: str):
    """Provider delivery confirmation (sent -> delivered)"""
    engine = get_engine_service()
    notification = await engine.confirmation.confirm(notification_id)
    logger.info(f"Delivery confirmed for {notification_id}")
    return notification.to_dict()
