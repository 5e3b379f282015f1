"""
Courier Storage Layer

PostgreSQL storage implementations for Courier entities.
"""
from .base import BaseStorage
from .notification_storage import NotificationStorage, NotificationFilters
from .error_storage import NotificationErrorStorage, ErrorFilters
from .batch_storage import BatchStorage
from .statistic_storage import StatisticStorage

__all__ = [
    'BaseStorage',
    'NotificationStorage',
    'NotificationFilters',
    'NotificationErrorStorage',
    'ErrorFilters',
    'BatchStorage',
    'StatisticStorage',
]
