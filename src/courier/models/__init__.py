"""
Courier Data Models

Domain models for the notification delivery engine.
"""
from .notification import (
    Notification,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    NotificationRecipient,
    NotificationContent,
    NotificationMetadata,
    GeneralMetadata,
    HealthcareMetadata,
    NotificationError,
    PRIORITY_ORDER,
    PRIORITY_WEIGHTS,
    TERMINAL_STATUSES,
)
from .batch import NotificationBatch, BatchStatus
from .statistic import Statistic

__all__ = [
    'Notification',
    'NotificationChannel',
    'NotificationPriority',
    'NotificationStatus',
    'NotificationRecipient',
    'NotificationContent',
    'NotificationMetadata',
    'GeneralMetadata',
    'HealthcareMetadata',
    'NotificationError',
    'PRIORITY_ORDER',
    'PRIORITY_WEIGHTS',
    'TERMINAL_STATUSES',
    'NotificationBatch',
    'BatchStatus',
    'Statistic',
]
