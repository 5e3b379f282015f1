"""
Courier Services

Delivery logic: state machine, dispatch queue, batches and the error ledger.
"""
from .engine_service import EngineService
from .notification_service import NotificationService, CancelResult
from .batch_service import BatchService
from .dispatch_queue import PriorityDispatchQueue
from .state_machine import DeliveryStateMachine
from .error_ledger import ErrorLedger
from .confirmation import ConfirmationHandler, TimerConfirmation, WebhookConfirmation
from .events import DomainEvent, EventBus

__all__ = [
    'EngineService',
    'NotificationService',
    'CancelResult',
    'BatchService',
    'PriorityDispatchQueue',
    'DeliveryStateMachine',
    'ErrorLedger',
    'ConfirmationHandler',
    'TimerConfirmation',
    'WebhookConfirmation',
    'DomainEvent',
    'EventBus',
]
