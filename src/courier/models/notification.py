"""
Notification Model

Notification: the central delivery entity.
NotificationError: append-only delivery failure record.
"""
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_id(prefix: str) -> str:
    """Generate ids like notif_1718000000000_k3j9x0a1b"""
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class NotificationChannel(str, Enum):
    """Delivery transports"""
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    CHAT = "chat"
    WEBHOOK = "webhook"


class NotificationPriority(str, Enum):
    """Priority classes, most urgent first"""
    CRITICAL = "critical"
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def weight(self) -> int:
        """Numeric weight, lower is serviced first"""
        return PRIORITY_WEIGHTS[self]


PRIORITY_WEIGHTS = {
    NotificationPriority.CRITICAL: 1,
    NotificationPriority.URGENT: 2,
    NotificationPriority.HIGH: 3,
    NotificationPriority.NORMAL: 4,
    NotificationPriority.LOW: 5,
}

# Iteration order for sweeps: most urgent class first
PRIORITY_ORDER = sorted(NotificationPriority, key=lambda p: PRIORITY_WEIGHTS[p])


class NotificationStatus(str, Enum):
    """Delivery lifecycle states"""
    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    NotificationStatus.DELIVERED,
    NotificationStatus.FAILED,
    NotificationStatus.CANCELLED,
})


@dataclass
class NotificationRecipient:
    """Addressing info; which field is required depends on the channel"""
    id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    device_token: Optional[str] = None
    chat_user_id: Optional[str] = None
    chat_channel: Optional[str] = None
    webhook_url: Optional[str] = None

    def address_for(self, channel: NotificationChannel) -> Optional[str]:
        """Return the address used by a channel, or None if unpopulated"""
        if channel == NotificationChannel.EMAIL:
            return self.email
        if channel == NotificationChannel.SMS:
            return self.phone
        if channel == NotificationChannel.PUSH:
            return self.device_token
        if channel == NotificationChannel.CHAT:
            return self.chat_channel or self.chat_user_id
        if channel == NotificationChannel.WEBHOOK:
            return self.webhook_url
        return self.id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "phone": self.phone,
            "device_token": self.device_token,
            "chat_user_id": self.chat_user_id,
            "chat_channel": self.chat_channel,
            "webhook_url": self.webhook_url,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "NotificationRecipient":
        data = data or {}
        return cls(
            id=data.get("id"),
            email=data.get("email"),
            phone=data.get("phone"),
            device_token=data.get("device_token"),
            chat_user_id=data.get("chat_user_id"),
            chat_channel=data.get("chat_channel"),
            webhook_url=data.get("webhook_url"),
        )


@dataclass
class NotificationContent:
    """Message body; text is required"""
    text: str = ""
    html: Optional[str] = None
    template: Optional[str] = None
    template_data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "html": self.html,
            "template": self.template,
            "template_data": self.template_data,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "NotificationContent":
        data = data or {}
        return cls(
            text=data.get("text") or "",
            html=data.get("html"),
            template=data.get("template"),
            template_data=data.get("template_data"),
        )


# ============================================
# Metadata
# ============================================

@dataclass
class GeneralMetadata:
    """Default metadata variant"""
    kind = "general"

    def to_dict(self) -> dict:
        return {}


@dataclass
class HealthcareMetadata:
    """Healthcare-specific annotations"""
    kind = "healthcare"

    patient_id: Optional[str] = None
    provider_id: Optional[str] = None
    appointment_id: Optional[str] = None
    facility_id: Optional[str] = None
    department: Optional[str] = None
    urgency: Optional[str] = None                       # 'low', 'medium', 'high', 'critical'
    hipaa_compliant: bool = True
    encryption_enabled: bool = False
    encryption_algorithm: Optional[str] = None
    encryption_key_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "patient_id": self.patient_id,
            "provider_id": self.provider_id,
            "appointment_id": self.appointment_id,
            "facility_id": self.facility_id,
            "department": self.department,
            "urgency": self.urgency,
            "hipaa_compliant": self.hipaa_compliant,
            "encryption": {
                "enabled": True,
                "algorithm": self.encryption_algorithm,
                "key_id": self.encryption_key_id,
            } if self.encryption_enabled else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HealthcareMetadata":
        encryption = data.get("encryption") or {}
        return cls(
            patient_id=data.get("patient_id"),
            provider_id=data.get("provider_id"),
            appointment_id=data.get("appointment_id"),
            facility_id=data.get("facility_id"),
            department=data.get("department"),
            urgency=data.get("urgency"),
            hipaa_compliant=data.get("hipaa_compliant", True),
            encryption_enabled=bool(encryption.get("enabled", False)),
            encryption_algorithm=encryption.get("algorithm"),
            encryption_key_id=encryption.get("key_id"),
        )


MetadataDetail = Union[GeneralMetadata, HealthcareMetadata]


@dataclass
class NotificationMetadata:
    """
    Structured annotations.

    `detail` is one of the known variants (tagged by its `kind` when
    serialized); anything else lives in `extra` and round-trips untouched.
    """
    source: str = "api"
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    correlation_id: Optional[str] = None
    detail: MetadataDetail = field(default_factory=GeneralMetadata)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {
            "source": self.source,
            "user_id": self.user_id,
            "organization_id": self.organization_id,
            "correlation_id": self.correlation_id,
            "kind": self.detail.kind,
            "extra": self.extra,
        }
        if self.detail.kind != GeneralMetadata.kind:
            data[self.detail.kind] = self.detail.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "NotificationMetadata":
        data = dict(data or {})
        kind = data.pop("kind", None)
        if kind is None and isinstance(data.get("healthcare"), dict):
            kind = HealthcareMetadata.kind

        detail: MetadataDetail = GeneralMetadata()
        if kind == HealthcareMetadata.kind:
            detail = HealthcareMetadata.from_dict(data.pop("healthcare", None) or {})

        known = {"source", "user_id", "organization_id", "correlation_id", "extra"}
        extra = dict(data.get("extra") or {})
        # Unknown top-level keys are kept as extension fields
        for key, value in data.items():
            if key not in known and key != HealthcareMetadata.kind:
                extra[key] = value

        return cls(
            source=data.get("source") or "api",
            user_id=data.get("user_id"),
            organization_id=data.get("organization_id"),
            correlation_id=data.get("correlation_id"),
            detail=detail,
            extra=extra,
        )


# ============================================
# Entities
# ============================================

@dataclass
class Notification:
    """
    Notification entity.

    Status changes only through DeliveryStateMachine. Terminal statuses
    (delivered, failed, cancelled) accept no further transition.
    """
    id: str = field(default_factory=lambda: generate_id("notif"))
    type: str = "generic"                               # e.g. 'appointment-reminder', 'lab-results'
    channel: NotificationChannel = NotificationChannel.EMAIL
    priority: NotificationPriority = NotificationPriority.NORMAL
    recipient: NotificationRecipient = field(default_factory=NotificationRecipient)
    content: NotificationContent = field(default_factory=NotificationContent)
    subject: Optional[str] = None
    metadata: NotificationMetadata = field(default_factory=NotificationMetadata)
    tags: List[str] = field(default_factory=list)

    # Lifecycle
    status: NotificationStatus = NotificationStatus.QUEUED
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    attempts: int = 0
    max_attempts: int = 3

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """True when not scheduled, or the scheduled time has passed"""
        if self.scheduled_at is None:
            return True
        return (now or utcnow()) >= self.scheduled_at

    def to_dict(self) -> dict:
        """Convert to dictionary for API response"""
        return {
            "id": self.id,
            "type": self.type,
            "channel": self.channel.value,
            "priority": self.priority.value,
            "recipient": self.recipient.to_dict(),
            "content": self.content.to_dict(),
            "subject": self.subject,
            "metadata": self.metadata.to_dict(),
            "tags": list(self.tags),
            "status": self.status.value,
            "scheduled_at": _iso(self.scheduled_at),
            "sent_at": _iso(self.sent_at),
            "delivered_at": _iso(self.delivered_at),
            "failed_at": _iso(self.failed_at),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class NotificationError:
    """
    Delivery failure record.

    Immutable; references the notification by id only.
    """
    notification_id: str
    channel: NotificationChannel
    error_message: str
    error_code: Optional[str] = None
    retryable: bool = True
    occurred_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "notification_id": self.notification_id,
            "channel": self.channel.value,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "retryable": self.retryable,
            "occurred_at": self.occurred_at.isoformat(),
        }
