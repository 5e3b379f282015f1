"""
Notification Error Storage

Append-only PostgreSQL ledger of delivery failures.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .base import BaseStorage
from ..models.notification import NotificationChannel, NotificationError

logger = logging.getLogger("courier.storage.notification_error")

# group_by value -> SQL expression
ERROR_GROUPINGS = {
    "date": "DATE(e.occurred_at)::text",
    "channel": "e.channel",
    "type": "n.type",
    "error_code": "COALESCE(e.error_code, 'unknown')",
}


@dataclass
class ErrorFilters:
    """Query filters for the error ledger"""
    channel: Optional[NotificationChannel] = None
    type: Optional[str] = None
    retryable: Optional[bool] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: Optional[int] = None
    offset: Optional[int] = None

    def where_clause(self) -> Tuple[str, List[Any]]:
        conditions: List[str] = []
        args: List[Any] = []

        def add(condition: str, value: Any):
            args.append(value)
            conditions.append(condition.format(f"${len(args)}"))

        if self.channel:
            add("e.channel = {}", NotificationChannel(self.channel).value)
        if self.type:
            add("n.type = {}", self.type)
        if self.retryable is not None:
            add("e.retryable = {}", self.retryable)
        if self.date_from:
            add("e.occurred_at >= {}", self.date_from)
        if self.date_to:
            add("e.occurred_at <= {}", self.date_to)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return where, args

    def to_dict(self) -> dict:
        return {
            "channel": NotificationChannel(self.channel).value if self.channel else None,
            "type": self.type,
            "retryable": self.retryable,
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
        }


class NotificationErrorStorage(BaseStorage):
    """Storage for NotificationError records"""

    async def add(self, error: NotificationError) -> NotificationError:
        """Append an error record"""
        query = """
            INSERT INTO notification_errors (
                notification_id, channel, error_message, error_code, retryable, occurred_at
            )
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING *
        """
        row = await self.fetchrow(
            query,
            error.notification_id, error.channel.value, error.error_message,
            error.error_code, error.retryable, error.occurred_at,
        )
        return self._row_to_error(row)

    async def list_by_notification(self, notification_id: str) -> List[NotificationError]:
        """Errors for one notification, oldest first"""
        query = """
            SELECT * FROM notification_errors
            WHERE notification_id = $1
            ORDER BY occurred_at ASC, id ASC
        """
        rows = await self.fetch(query, notification_id)
        return [self._row_to_error(row) for row in rows]

    async def list_with_details(self, filters: ErrorFilters) -> Tuple[List[Dict[str, Any]], int]:
        """
        Errors joined with notification type and recipient email.

        Returns (page, total matching).
        """
        where, args = filters.where_clause()
        base = f"""
            FROM notification_errors e
            LEFT JOIN notifications n ON n.id = e.notification_id
            {where}
        """
        total = int(await self.fetchval(f"SELECT COUNT(*) {base}", *args) or 0)

        query = f"""
            SELECT e.*, n.type AS notification_type, n.recipient_email
            {base}
            ORDER BY e.occurred_at DESC, e.id DESC
        """
        page_args = list(args)
        if filters.limit is not None:
            page_args.append(filters.limit)
            query += f" LIMIT ${len(page_args)}"
        if filters.offset:
            page_args.append(filters.offset)
            query += f" OFFSET ${len(page_args)}"

        rows = await self.fetch(query, *page_args)
        errors = []
        for row in rows:
            item = self._row_to_error(row).to_dict()
            item["type"] = row["notification_type"]
            item["recipient_email"] = row["recipient_email"]
            errors.append(item)
        return errors, total

    async def statistics(self, since: datetime, group_by: str = "date") -> List[Dict[str, Any]]:
        """Error counts grouped by date, channel, type or error_code"""
        expression = ERROR_GROUPINGS.get(group_by)
        if expression is None:
            raise ValueError(f"Unsupported group_by: {group_by}")
        query = f"""
            SELECT {expression} AS grp,
                   COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE e.retryable) AS retryable
            FROM notification_errors e
            LEFT JOIN notifications n ON n.id = e.notification_id
            WHERE e.occurred_at >= $1
            GROUP BY grp
            ORDER BY grp
        """
        rows = await self.fetch(query, since)
        return [
            {
                group_by: row["grp"],
                "count": int(row["total"]),
                "retryable": int(row["retryable"]),
            }
            for row in rows
        ]

    def _row_to_error(self, row) -> NotificationError:
        """Convert database row to NotificationError"""
        return NotificationError(
            id=row["id"],
            notification_id=row["notification_id"],
            channel=NotificationChannel(row["channel"]),
            error_message=row["error_message"],
            error_code=row["error_code"],
            retryable=row["retryable"],
            occurred_at=row["occurred_at"],
        )
