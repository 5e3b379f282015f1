"""
Base Sender

Abstract interface for notification delivery channels.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from ..models.notification import Notification, NotificationChannel

# HTTP statuses worth another attempt; every other 4xx is permanent
RETRYABLE_HTTP_STATUSES = frozenset({408, 425, 429})


@dataclass
class SendResult:
    """Result of a send attempt"""
    success: bool
    error: Optional[str] = None
    code: Optional[str] = None
    retryable: bool = True
    provider_message_id: Optional[str] = None

    @classmethod
    def ok(cls, provider_message_id: Optional[str] = None) -> "SendResult":
        return cls(success=True, provider_message_id=provider_message_id)

    @classmethod
    def permanent(cls, error: str, code: Optional[str] = None) -> "SendResult":
        return cls(success=False, error=error, code=code, retryable=False)

    @classmethod
    def transient(cls, error: str, code: Optional[str] = None) -> "SendResult":
        return cls(success=False, error=error, code=code, retryable=True)


def http_failure(response: httpx.Response) -> SendResult:
    """Classify a non-success HTTP response"""
    status = response.status_code
    error = f"HTTP {status}: {response.text[:200]}"
    retryable = status >= 500 or status in RETRYABLE_HTTP_STATUSES
    return SendResult(success=False, error=error, code=f"http_{status}", retryable=retryable)


class BaseSender(ABC):
    """Abstract notification sender"""

    channel: NotificationChannel

    @abstractmethod
    async def send(self, notification: Notification) -> SendResult:
        """
        Perform one delivery attempt.

        Must not mutate the notification. Transport exceptions are mapped
        to a failed SendResult with a retryable classification.
        """
        ...

    @abstractmethod
    async def close(self):
        """Cleanup resources"""
        ...


class HttpSender(BaseSender):
    """Sender backed by a shared httpx client"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def close(self):
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
