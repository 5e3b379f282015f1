"""
Courier Errors

Exception taxonomy shared by the delivery engine and the API layer.
"""
from typing import Optional


class CourierError(Exception):
    """Base error for Courier."""


class ValidationError(CourierError):
    """Missing or invalid input; surfaced to the caller, never retried."""


class NotFoundError(CourierError):
    """Id does not resolve to a stored record."""


class InvalidTransition(CourierError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, entity_id: str, current: str, requested: str, entity: str = "Notification"):
        self.entity_id = entity_id
        self.entity = entity
        self.current = current
        self.requested = requested
        super().__init__(
            f"{entity} {entity_id}: transition {current} -> {requested} not allowed"
        )


class ChannelDispatchError(CourierError):
    """A single delivery attempt failed at the channel boundary."""

    def __init__(
        self,
        channel: str,
        message: str,
        code: Optional[str] = None,
        retryable: bool = True,
    ):
        self.channel = channel
        self.message = message
        self.code = code
        self.retryable = retryable
        super().__init__(f"[{channel}] {message}")


class BrokerUnavailable(CourierError):
    """Queue broker could not be reached."""
