"""
Courier API Routes

FastAPI route handlers for the Courier engine.
"""
from .health import router as health_router
from .notifications import router as notifications_router
from .batches import router as batches_router
from .queue import router as queue_router
from .analytics import router as analytics_router

__all__ = [
    'health_router',
    'notifications_router',
    'batches_router',
    'queue_router',
    'analytics_router',
]
