"""
Analytics Routes

Delivery metrics, per-channel statistics, rollups and the error ledger.
"""
from datetime import date, datetime, timedelta
from typing import Optional, Tuple

from fastapi import APIRouter, Response

from ..models.notification import NotificationChannel, NotificationStatus, utcnow
from ..services.engine_service import get_engine_service
from ..storage.error_storage import ErrorFilters
from ..storage.notification_storage import NotificationFilters

router = APIRouter(tags=["analytics"])

DEFAULT_WINDOW_DAYS = 7


def _window(date_from: Optional[datetime], date_to: Optional[datetime]) -> Tuple[datetime, datetime]:
    date_to = date_to or utcnow()
    date_from = date_from or date_to - timedelta(days=DEFAULT_WINDOW_DAYS)
    return date_from, date_to


# ============================================
# Analytics
# ============================================

@router.get("/analytics/metrics")
async def delivery_metrics(date_from: Optional[datetime] = None, date_to: Optional[datetime] = None):
    """Delivery outcomes for notifications created in range (default last 7 days)"""
    engine = get_engine_service()
    date_from, date_to = _window(date_from, date_to)
    metrics = await engine.notification_service.get_delivery_metrics(date_from, date_to)
    return {"date_from": date_from.isoformat(), "date_to": date_to.isoformat(), **metrics}


@router.get("/analytics/channels")
async def channel_statistics(date_from: Optional[datetime] = None, date_to: Optional[datetime] = None):
    engine = get_engine_service()
    date_from, date_to = _window(date_from, date_to)
    return await engine.notification_service.get_channel_statistics(date_from, date_to)


@router.get("/analytics/counts")
async def notification_counts(
    status: Optional[NotificationStatus] = None,
    channel: Optional[NotificationChannel] = None,
    type: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    engine = get_engine_service()
    filters = NotificationFilters(
        status=status, channel=channel, type=type, date_from=date_from, date_to=date_to
    )
    return {"count": await engine.notification_service.get_notification_counts(filters)}


@router.get("/analytics/statistics")
async def statistics(
    metric_name: Optional[str] = None,
    channel: Optional[str] = None,
    type: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
):
    """Daily rollups"""
    engine = get_engine_service()
    stats = await engine.notification_service.get_statistics(
        metric_name=metric_name, channel=channel, type=type, date_from=date_from, date_to=date_to
    )
    return [s.to_dict() for s in stats]


# ============================================
# Error ledger
# ============================================

def _error_filters(
    channel: Optional[NotificationChannel],
    type: Optional[str],
    retryable: Optional[bool],
    date_from: Optional[datetime],
    date_to: Optional[datetime],
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> ErrorFilters:
    return ErrorFilters(
        channel=channel,
        type=type,
        retryable=retryable,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )


@router.get("/errors")
async def list_errors(
    channel: Optional[NotificationChannel] = None,
    type: Optional[str] = None,
    retryable: Optional[bool] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
):
    engine = get_engine_service()
    limit = max(1, min(limit, 100))
    filters = _error_filters(channel, type, retryable, date_from, date_to, limit, max(0, offset))
    errors, total = await engine.notification_service.get_all_errors(filters)
    return {"errors": errors, "total": total, "limit": limit, "offset": offset}


@router.get("/errors/statistics")
async def error_statistics(days: int = 7, group_by: str = "date"):
    engine = get_engine_service()
    return await engine.notification_service.get_error_statistics(days=days, group_by=group_by)


@router.get("/errors/export")
async def export_errors(
    format: str = "json",
    channel: Optional[NotificationChannel] = None,
    type: Optional[str] = None,
    retryable: Optional[bool] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    """Download matching errors as JSON or CSV"""
    engine = get_engine_service()
    filters = _error_filters(channel, type, retryable, date_from, date_to)
    body = await engine.notification_service.export_errors(filters, format)
    media_type = "text/csv" if format == "csv" else "application/json"
    filename = f"notification-errors-{utcnow().strftime('%Y%m%d%H%M%S')}.{format}"
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
