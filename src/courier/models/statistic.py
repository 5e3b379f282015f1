"""
Statistic Model

Daily rollup rows written after each status change; read only by analytics.
"""
import datetime
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Statistic:
    """One (metric, channel, type, priority, date) bucket"""
    metric_name: str
    channel: Optional[str] = None
    type: Optional[str] = None
    priority: Optional[str] = None
    count: int = 0
    average_delivery_time: Optional[float] = None       # milliseconds
    error_rate: Optional[float] = None                  # percentage
    date: datetime.date = field(default_factory=datetime.date.today)

    def to_dict(self) -> dict:
        return {
            "metric_name": self.metric_name,
            "channel": self.channel,
            "type": self.type,
            "priority": self.priority,
            "count": self.count,
            "average_delivery_time": self.average_delivery_time,
            "error_rate": self.error_rate,
            "date": self.date.isoformat(),
        }
