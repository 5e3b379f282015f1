"""
Statistic Storage

PostgreSQL storage for daily notification rollups.
"""
import logging
from datetime import date
from typing import List, Optional

from .base import BaseStorage
from ..models.statistic import Statistic

logger = logging.getLogger("courier.storage.statistic")


class StatisticStorage(BaseStorage):
    """Storage for Statistic rollups"""

    async def record(self, stat: Statistic) -> None:
        """
        Add stat.count to its (metric, channel, type, priority, date) bucket.

        average_delivery_time and error_rate are running averages weighted
        by count; a null sample leaves the stored average unchanged.
        """
        query = """
            INSERT INTO notification_statistics (
                metric_name, channel, type, priority, count,
                average_delivery_time, error_rate, date
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (metric_name, channel, type, priority, date)
            DO UPDATE SET
                count = notification_statistics.count + EXCLUDED.count,
                average_delivery_time = CASE
                    WHEN EXCLUDED.average_delivery_time IS NULL
                        THEN notification_statistics.average_delivery_time
                    WHEN notification_statistics.average_delivery_time IS NULL
                        THEN EXCLUDED.average_delivery_time
                    ELSE (
                        notification_statistics.average_delivery_time * notification_statistics.count
                        + EXCLUDED.average_delivery_time * EXCLUDED.count
                    ) / NULLIF(notification_statistics.count + EXCLUDED.count, 0)
                END,
                error_rate = CASE
                    WHEN EXCLUDED.error_rate IS NULL
                        THEN notification_statistics.error_rate
                    WHEN notification_statistics.error_rate IS NULL
                        THEN EXCLUDED.error_rate
                    ELSE (
                        notification_statistics.error_rate * notification_statistics.count
                        + EXCLUDED.error_rate * EXCLUDED.count
                    ) / NULLIF(notification_statistics.count + EXCLUDED.count, 0)
                END
        """
        await self.execute(
            query,
            stat.metric_name, stat.channel, stat.type, stat.priority, stat.count,
            stat.average_delivery_time, stat.error_rate, stat.date,
        )

    async def list(
        self,
        metric_name: Optional[str] = None,
        channel: Optional[str] = None,
        type: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[Statistic]:
        """List rollups, newest date first"""
        conditions = []
        args = []
        for column, op, value in (
            ("metric_name", "=", metric_name),
            ("channel", "=", channel),
            ("type", "=", type),
            ("date", ">=", date_from),
            ("date", "<=", date_to),
        ):
            if value is not None:
                args.append(value)
                conditions.append(f"{column} {op} ${len(args)}")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = await self.fetch(
            f"SELECT * FROM notification_statistics {where} ORDER BY date DESC, metric_name", *args
        )
        return [self._row_to_stat(row) for row in rows]

    def _row_to_stat(self, row) -> Statistic:
        """Convert database row to Statistic"""
        return Statistic(
            metric_name=row["metric_name"],
            channel=row["channel"],
            type=row["type"],
            priority=row["priority"],
            count=row["count"],
            average_delivery_time=(
                float(row["average_delivery_time"]) if row["average_delivery_time"] is not None else None
            ),
            error_rate=float(row["error_rate"]) if row["error_rate"] is not None else None,
            date=row["date"],
        )
