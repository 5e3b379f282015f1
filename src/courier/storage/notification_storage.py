"""
Notification Storage

PostgreSQL storage for notifications. Sole owner of notification rows.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .base import BaseStorage, dump_json, load_json
from ..models.notification import (
    Notification,
    NotificationChannel,
    NotificationContent,
    NotificationMetadata,
    NotificationPriority,
    NotificationRecipient,
    NotificationStatus,
    utcnow,
)

logger = logging.getLogger("courier.storage.notification")

MAX_PAGE_SIZE = 100

# Orders rows by priority weight instead of the enum's text value
PRIORITY_WEIGHT_SQL = """
    CASE priority
        WHEN 'critical' THEN 1
        WHEN 'urgent' THEN 2
        WHEN 'high' THEN 3
        WHEN 'normal' THEN 4
        ELSE 5
    END
"""


@dataclass
class NotificationFilters:
    """Query filters for notification listing"""
    status: Optional[NotificationStatus] = None
    priority: Optional[NotificationPriority] = None
    channel: Optional[NotificationChannel] = None
    type: Optional[str] = None
    recipient_id: Optional[str] = None
    recipient_email: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)
    limit: int = 50
    offset: int = 0

    def __post_init__(self):
        self.limit = max(1, min(int(self.limit), MAX_PAGE_SIZE))
        self.offset = max(0, int(self.offset))

    def where_clause(self) -> Tuple[str, List[Any]]:
        """Build a WHERE clause with positional parameters"""
        conditions: List[str] = []
        args: List[Any] = []

        def add(condition: str, value: Any):
            args.append(value)
            conditions.append(condition.format(f"${len(args)}"))

        if self.status:
            add("status = {}", NotificationStatus(self.status).value)
        if self.priority:
            add("priority = {}", NotificationPriority(self.priority).value)
        if self.channel:
            add("channel = {}", NotificationChannel(self.channel).value)
        if self.type:
            add("type = {}", self.type)
        if self.recipient_id:
            add("recipient_id = {}", self.recipient_id)
        if self.recipient_email:
            add("recipient_email = {}", self.recipient_email)
        if self.date_from:
            add("created_at >= {}", self.date_from)
        if self.date_to:
            add("created_at <= {}", self.date_to)
        if self.tags:
            add("tags @> {}::jsonb", dump_json(list(self.tags)))

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return where, args


class NotificationStorage(BaseStorage):
    """Storage for Notification entities"""

    async def create(self, notification: Notification) -> Notification:
        """Create a new notification"""
        query = """
            INSERT INTO notifications (
                id, type, channel, status, priority,
                recipient_id, recipient_email, recipient_phone,
                recipient_device_token, recipient_chat_user_id,
                recipient_chat_channel, recipient_webhook_url,
                subject, content_text, content_html, template_name, template_data,
                metadata, tags, attempts, max_attempts,
                scheduled_at, sent_at, delivered_at, failed_at,
                created_at, updated_at
            )
            VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10,$11,$12,$13,$14,$15,$16,$17,
                    $18,$19,$20,$21,$22,$23,$24,$25,$26,$27)
            RETURNING *
        """
        r = notification.recipient
        c = notification.content
        row = await self.fetchrow(
            query,
            notification.id, notification.type, notification.channel.value,
            notification.status.value, notification.priority.value,
            r.id, r.email, r.phone, r.device_token, r.chat_user_id,
            r.chat_channel, r.webhook_url,
            notification.subject, c.text, c.html, c.template, dump_json(c.template_data),
            dump_json(notification.metadata.to_dict()), dump_json(notification.tags),
            notification.attempts, notification.max_attempts,
            notification.scheduled_at, notification.sent_at,
            notification.delivered_at, notification.failed_at,
            notification.created_at, notification.updated_at,
        )
        return self._row_to_notification(row)

    async def get_by_id(self, notification_id: str) -> Optional[Notification]:
        """Get notification by ID"""
        row = await self.fetchrow("SELECT * FROM notifications WHERE id = $1", notification_id)
        return self._row_to_notification(row) if row else None

    async def find_many(self, filters: NotificationFilters) -> List[Notification]:
        """List notifications matching filters, newest first"""
        where, args = filters.where_clause()
        query = f"""
            SELECT * FROM notifications
            {where}
            ORDER BY created_at DESC
            LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}
        """
        rows = await self.fetch(query, *args, filters.limit, filters.offset)
        return [self._row_to_notification(row) for row in rows]

    async def count(self, filters: NotificationFilters) -> int:
        """Count notifications matching filters (pagination ignored)"""
        where, args = filters.where_clause()
        return int(await self.fetchval(f"SELECT COUNT(*) FROM notifications {where}", *args) or 0)

    async def transition(
        self,
        notification_id: str,
        expected_status: NotificationStatus,
        new_status: NotificationStatus,
        attempts: int,
        sent_at: Optional[datetime] = None,
        delivered_at: Optional[datetime] = None,
        failed_at: Optional[datetime] = None,
    ) -> Optional[Notification]:
        """
        Move a notification between statuses in one statement.

        Only applies when the row is still in expected_status; returns None
        otherwise. Timestamps already set are never overwritten.
        """
        query = """
            UPDATE notifications
            SET status = $3,
                attempts = $4,
                sent_at = COALESCE(sent_at, $5),
                delivered_at = COALESCE(delivered_at, $6),
                failed_at = COALESCE(failed_at, $7),
                updated_at = $8
            WHERE id = $1 AND status = $2
            RETURNING *
        """
        row = await self.fetchrow(
            query,
            notification_id, expected_status.value, new_status.value, attempts,
            sent_at, delivered_at, failed_at, utcnow(),
        )
        return self._row_to_notification(row) if row else None

    async def delete(self, notification_id: str) -> bool:
        """Administrative delete"""
        result = await self.execute("DELETE FROM notifications WHERE id = $1", notification_id)
        return result == "DELETE 1"

    async def get_queued(
        self,
        priority: Optional[NotificationPriority] = None,
        limit: int = 100,
        now: Optional[datetime] = None,
    ) -> List[Notification]:
        """Queued notifications that are due, most urgent and oldest first"""
        now = now or utcnow()
        if priority:
            query = f"""
                SELECT * FROM notifications
                WHERE status = 'queued'
                  AND (scheduled_at IS NULL OR scheduled_at <= $1)
                  AND priority = $3
                ORDER BY {PRIORITY_WEIGHT_SQL}, created_at ASC
                LIMIT $2
            """
            rows = await self.fetch(query, now, limit, NotificationPriority(priority).value)
        else:
            query = f"""
                SELECT * FROM notifications
                WHERE status = 'queued'
                  AND (scheduled_at IS NULL OR scheduled_at <= $1)
                ORDER BY {PRIORITY_WEIGHT_SQL}, created_at ASC
                LIMIT $2
            """
            rows = await self.fetch(query, now, limit)
        return [self._row_to_notification(row) for row in rows]

    async def get_scheduled(self, before: datetime, limit: int = 100) -> List[Notification]:
        """Queued notifications with a scheduled time at or before `before`"""
        query = """
            SELECT * FROM notifications
            WHERE status = 'queued'
              AND scheduled_at IS NOT NULL
              AND scheduled_at <= $1
            ORDER BY scheduled_at ASC
            LIMIT $2
        """
        rows = await self.fetch(query, before, limit)
        return [self._row_to_notification(row) for row in rows]

    async def get_stuck_processing(self, updated_before: datetime, limit: int = 100) -> List[Notification]:
        """Notifications left in processing since before the given time"""
        query = """
            SELECT * FROM notifications
            WHERE status = 'processing' AND updated_at < $1
            ORDER BY updated_at ASC
            LIMIT $2
        """
        rows = await self.fetch(query, updated_before, limit)
        return [self._row_to_notification(row) for row in rows]

    # ============================================
    # Analytics
    # ============================================

    async def delivery_metrics(self, date_from: datetime, date_to: datetime) -> Dict[str, float]:
        """Aggregate delivery outcomes for notifications created in range"""
        query = """
            SELECT
                COUNT(*) FILTER (WHERE status IN ('sent', 'delivered')) AS total_sent,
                COUNT(*) FILTER (WHERE status = 'delivered') AS total_delivered,
                COUNT(*) FILTER (WHERE status = 'failed') AS total_failed,
                AVG(EXTRACT(EPOCH FROM (delivered_at - sent_at)) * 1000) AS avg_delivery_time
            FROM notifications
            WHERE created_at >= $1 AND created_at <= $2
        """
        row = await self.fetchrow(query, date_from, date_to)
        total_sent = int(row["total_sent"] or 0)
        total_delivered = int(row["total_delivered"] or 0)
        return {
            "total_sent": total_sent,
            "total_delivered": total_delivered,
            "total_failed": int(row["total_failed"] or 0),
            "average_delivery_time_ms": float(row["avg_delivery_time"] or 0),
            "success_rate": (total_delivered / total_sent) * 100 if total_sent else 0.0,
        }

    async def channel_stats(self, date_from: datetime, date_to: datetime) -> List[Dict[str, Any]]:
        """Per-channel delivery outcomes for notifications created in range"""
        query = """
            SELECT
                channel,
                COUNT(*) FILTER (WHERE status IN ('sent', 'delivered')) AS sent,
                COUNT(*) FILTER (WHERE status = 'delivered') AS delivered,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed
            FROM notifications
            WHERE created_at >= $1 AND created_at <= $2
            GROUP BY channel
            ORDER BY channel
        """
        rows = await self.fetch(query, date_from, date_to)
        stats = []
        for row in rows:
            sent = int(row["sent"] or 0)
            delivered = int(row["delivered"] or 0)
            stats.append({
                "channel": row["channel"],
                "sent": sent,
                "delivered": delivered,
                "failed": int(row["failed"] or 0),
                "success_rate": (delivered / sent) * 100 if sent else 0.0,
            })
        return stats

    def _row_to_notification(self, row) -> Notification:
        """Convert database row to Notification"""
        return Notification(
            id=row["id"],
            type=row["type"],
            channel=NotificationChannel(row["channel"]),
            status=NotificationStatus(row["status"]),
            priority=NotificationPriority(row["priority"]),
            recipient=NotificationRecipient(
                id=row["recipient_id"],
                email=row["recipient_email"],
                phone=row["recipient_phone"],
                device_token=row["recipient_device_token"],
                chat_user_id=row["recipient_chat_user_id"],
                chat_channel=row["recipient_chat_channel"],
                webhook_url=row["recipient_webhook_url"],
            ),
            subject=row["subject"],
            content=NotificationContent(
                text=row["content_text"] or "",
                html=row["content_html"],
                template=row["template_name"],
                template_data=load_json(row["template_data"]),
            ),
            metadata=NotificationMetadata.from_dict(load_json(row["metadata"], {})),
            tags=load_json(row["tags"], []),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            scheduled_at=row["scheduled_at"],
            sent_at=row["sent_at"],
            delivered_at=row["delivered_at"],
            failed_at=row["failed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
