"""
Batch Model

NotificationBatch groups notification ids under one controllable unit.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .notification import generate_id, utcnow


class BatchStatus(str, Enum):
    """Batch lifecycle; only moves forward"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _BATCH_RANK[self]


_BATCH_RANK = {
    BatchStatus.PENDING: 0,
    BatchStatus.PROCESSING: 1,
    BatchStatus.COMPLETED: 2,
    BatchStatus.FAILED: 2,
}


@dataclass
class NotificationBatch:
    """
    Batch entity.

    success_count + failure_count never exceeds total_count.
    "completed" means processing finished, not that every member succeeded.
    """
    id: str = field(default_factory=lambda: generate_id("batch"))
    name: str = ""
    status: BatchStatus = BatchStatus.PENDING
    total_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    errors: List[str] = field(default_factory=list)

    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.name:
            self.name = f"Batch {self.created_at.isoformat()}"

    def to_dict(self) -> dict:
        """Convert to dictionary for API response"""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "total_count": self.total_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "errors": list(self.errors),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
