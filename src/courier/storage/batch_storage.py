"""
Batch Storage

PostgreSQL storage for notification batches and batch membership.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Set, Tuple

from .base import BaseStorage, dump_json, load_json
from .notification_storage import MAX_PAGE_SIZE
from ..models.batch import BatchStatus, NotificationBatch

logger = logging.getLogger("courier.storage.batch")

OPEN_BATCH_STATUSES = (BatchStatus.PENDING.value, BatchStatus.PROCESSING.value)


class BatchStorage(BaseStorage):
    """Storage for NotificationBatch entities"""

    async def create(self, batch: NotificationBatch) -> NotificationBatch:
        """Create a new batch"""
        query = """
            INSERT INTO notification_batches (
                id, name, status, total_count, success_count, failure_count,
                errors, created_at, started_at, completed_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            RETURNING *
        """
        row = await self.fetchrow(
            query,
            batch.id, batch.name, batch.status.value,
            batch.total_count, batch.success_count, batch.failure_count,
            dump_json(batch.errors), batch.created_at,
            batch.started_at, batch.completed_at,
        )
        return self._row_to_batch(row)

    async def get_by_id(self, batch_id: str) -> Optional[NotificationBatch]:
        """Get batch by ID"""
        row = await self.fetchrow("SELECT * FROM notification_batches WHERE id = $1", batch_id)
        return self._row_to_batch(row) if row else None

    async def list(
        self, status: Optional[BatchStatus] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[NotificationBatch], int]:
        """List batches, newest first"""
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        offset = max(0, int(offset))
        if status:
            status_value = BatchStatus(status).value
            total = await self.fetchval(
                "SELECT COUNT(*) FROM notification_batches WHERE status = $1", status_value
            )
            rows = await self.fetch(
                """
                SELECT * FROM notification_batches
                WHERE status = $1
                ORDER BY created_at DESC
                LIMIT $2 OFFSET $3
                """,
                status_value, limit, offset,
            )
        else:
            total = await self.fetchval("SELECT COUNT(*) FROM notification_batches")
            rows = await self.fetch(
                """
                SELECT * FROM notification_batches
                ORDER BY created_at DESC
                LIMIT $1 OFFSET $2
                """,
                limit, offset,
            )
        return [self._row_to_batch(row) for row in rows], int(total or 0)

    async def add_members(
        self, batch_id: str, notification_ids: Iterable[str]
    ) -> Optional[NotificationBatch]:
        """
        Attach notifications to an open batch and grow total_count.

        Returns None when the batch is missing or no longer pending/processing.
        Ids already in the batch are ignored.
        """
        ids = list(dict.fromkeys(notification_ids))
        async with self.transaction() as conn:
            status = await conn.fetchval(
                "SELECT status FROM notification_batches WHERE id = $1 FOR UPDATE", batch_id
            )
            if status not in OPEN_BATCH_STATUSES:
                return None

            inserted = await conn.fetch(
                """
                INSERT INTO notification_batch_items (batch_id, notification_id)
                SELECT $1, unnest($2::text[])
                ON CONFLICT (batch_id, notification_id) DO NOTHING
                RETURNING notification_id
                """,
                batch_id, ids,
            )
            row = await conn.fetchrow(
                """
                UPDATE notification_batches
                SET total_count = total_count + $2
                WHERE id = $1
                RETURNING *
                """,
                batch_id, len(inserted),
            )
        return self._row_to_batch(row)

    async def get_member_ids(self, batch_id: str) -> List[str]:
        """Notification ids in a batch, in insertion order"""
        rows = await self.fetch(
            """
            SELECT notification_id FROM notification_batch_items
            WHERE batch_id = $1
            ORDER BY added_at ASC, id ASC
            """,
            batch_id,
        )
        return [row["notification_id"] for row in rows]

    async def get_open_member_ids(self, notification_ids: Iterable[str]) -> Set[str]:
        """Which of the given notifications already belong to a pending or processing batch"""
        rows = await self.fetch(
            """
            SELECT DISTINCT i.notification_id
            FROM notification_batch_items i
            JOIN notification_batches b ON b.id = i.batch_id
            WHERE b.status = ANY($1::text[])
              AND i.notification_id = ANY($2::text[])
            """,
            list(OPEN_BATCH_STATUSES), list(notification_ids),
        )
        return {row["notification_id"] for row in rows}

    async def update_status(
        self,
        batch_id: str,
        expected: Iterable[BatchStatus],
        new_status: BatchStatus,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        all_counted: bool = False,
    ) -> Optional[NotificationBatch]:
        """
        Move a batch to new_status if it is currently in one of `expected`.

        With all_counted, also requires every member to have a recorded result.
        """
        counted = " AND success_count + failure_count >= total_count" if all_counted else ""
        query = f"""
            UPDATE notification_batches
            SET status = $3,
                started_at = COALESCE(started_at, $4),
                completed_at = COALESCE(completed_at, $5)
            WHERE id = $1 AND status = ANY($2::text[]){counted}
            RETURNING *
        """
        row = await self.fetchrow(
            query,
            batch_id, [BatchStatus(s).value for s in expected], new_status.value,
            started_at, completed_at,
        )
        return self._row_to_batch(row) if row else None

    async def record_member_result(
        self, batch_id: str, success: bool, error: Optional[str] = None
    ) -> Optional[NotificationBatch]:
        """Count one resolved member; refused once every member is counted"""
        query = """
            UPDATE notification_batches
            SET success_count = success_count + $2,
                failure_count = failure_count + $3,
                errors = COALESCE(errors, '[]'::jsonb) || $4::jsonb
            WHERE id = $1 AND success_count + failure_count < total_count
            RETURNING *
        """
        row = await self.fetchrow(
            query,
            batch_id, 1 if success else 0, 0 if success else 1,
            dump_json([error] if error else []),
        )
        return self._row_to_batch(row) if row else None

    def _row_to_batch(self, row) -> NotificationBatch:
        """Convert database row to NotificationBatch"""
        return NotificationBatch(
            id=row["id"],
            name=row["name"],
            status=BatchStatus(row["status"]),
            total_count=row["total_count"],
            success_count=row["success_count"],
            failure_count=row["failure_count"],
            errors=load_json(row["errors"], []),
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )
