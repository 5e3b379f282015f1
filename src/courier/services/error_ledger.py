"""
Error Ledger Service

Append-only record of delivery failures with statistics and export.
"""
import csv
import io
import json
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ChannelDispatchError, ValidationError
from ..models.notification import Notification, NotificationChannel, NotificationError, utcnow
from ..storage.error_storage import ERROR_GROUPINGS, ErrorFilters, NotificationErrorStorage

logger = logging.getLogger("courier.services.error_ledger")

EXPORT_FORMATS = ("json", "csv")

CSV_HEADERS = [
    "ID",
    "Notification ID",
    "Channel",
    "Type",
    "Error Message",
    "Error Code",
    "Retryable",
    "Occurred At",
    "Recipient Email",
]


class ErrorLedger:
    """Records and reports notification delivery errors"""

    def __init__(self, storage: NotificationErrorStorage):
        self.storage = storage

    async def record(self, notification: Notification, error: ChannelDispatchError) -> NotificationError:
        """Append a ledger entry for one failed attempt"""
        entry = NotificationError(
            notification_id=notification.id,
            channel=NotificationChannel(notification.channel),
            error_message=error.message,
            error_code=error.code,
            retryable=error.retryable,
        )
        saved = await self.storage.add(entry)
        logger.info(
            f"Recorded error for {notification.id} [{entry.channel.value}] "
            f"code={entry.error_code} retryable={entry.retryable}"
        )
        return saved

    async def get_errors(self, notification_id: str) -> List[NotificationError]:
        """Errors for one notification, oldest first"""
        return await self.storage.list_by_notification(notification_id)

    async def list_errors(self, filters: ErrorFilters) -> Tuple[List[Dict[str, Any]], int]:
        return await self.storage.list_with_details(filters)

    async def statistics(self, days: int = 7, group_by: str = "date") -> List[Dict[str, Any]]:
        """Error counts for the last `days` days grouped by date, channel, type or error_code"""
        if group_by not in ERROR_GROUPINGS:
            raise ValidationError(
                f"group_by must be one of {', '.join(ERROR_GROUPINGS)}, got '{group_by}'"
            )
        if days < 1:
            raise ValidationError("days must be at least 1")
        return await self.storage.statistics(utcnow() - timedelta(days=days), group_by)

    async def export(self, filters: Optional[ErrorFilters] = None, format: str = "json") -> str:
        """Export matching errors as a JSON document or CSV text"""
        if format not in EXPORT_FORMATS:
            raise ValidationError(f"Unsupported export format: {format}")

        filters = filters or ErrorFilters()
        errors, total = await self.storage.list_with_details(filters)
        logger.info(f"Exporting {len(errors)} error(s) as {format}")

        if format == "csv":
            return self._to_csv(errors)

        return json.dumps(
            {
                "exported_at": utcnow().isoformat(),
                "filters": filters.to_dict(),
                "error_count": total,
                "errors": errors,
            },
            indent=2,
        )

    @staticmethod
    def _to_csv(errors: List[Dict[str, Any]]) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_HEADERS)
        for error in errors:
            writer.writerow([
                error.get("id"),
                error.get("notification_id"),
                error.get("channel"),
                error.get("type") or "",
                error.get("error_message"),
                error.get("error_code") or "",
                "Yes" if error.get("retryable") else "No",
                error.get("occurred_at"),
                error.get("recipient_email") or "",
            ])
        return buffer.getvalue()
