from datetime import timedelta

from courier.models import (
    PRIORITY_ORDER,
    BatchStatus,
    GeneralMetadata,
    HealthcareMetadata,
    Notification,
    NotificationBatch,
    NotificationChannel,
    NotificationMetadata,
    NotificationPriority,
    NotificationRecipient,
    NotificationStatus,
)
from courier.models.notification import utcnow


def test_priority_order_and_weights():
    assert PRIORITY_ORDER == [
        NotificationPriority.CRITICAL,
        NotificationPriority.URGENT,
        NotificationPriority.HIGH,
        NotificationPriority.NORMAL,
        NotificationPriority.LOW,
    ]
    assert NotificationPriority.CRITICAL.weight == 1
    assert NotificationPriority.LOW.weight == 5


def test_terminal_statuses():
    terminal = {s for s in NotificationStatus if s.is_terminal}
    assert terminal == {NotificationStatus.DELIVERED, NotificationStatus.FAILED, NotificationStatus.CANCELLED}


def test_recipient_address_per_channel():
    recipient = NotificationRecipient(email="a@example.com", chat_user_id="U1", chat_channel="C1")
    assert recipient.address_for(NotificationChannel.EMAIL) == "a@example.com"
    assert recipient.address_for(NotificationChannel.CHAT) == "C1"
    assert recipient.address_for(NotificationChannel.SMS) is None


def test_metadata_keeps_unknown_fields():
    metadata = NotificationMetadata.from_dict({
        "source": "ehr",
        "correlation_id": "c-1",
        "campaign": "flu-shots",
    })
    assert isinstance(metadata.detail, GeneralMetadata)
    assert metadata.extra == {"campaign": "flu-shots"}
    assert NotificationMetadata.from_dict(metadata.to_dict()).extra == {"campaign": "flu-shots"}


def test_healthcare_metadata_round_trip():
    metadata = NotificationMetadata(
        source="healthcare",
        detail=HealthcareMetadata(patient_id="p-1", encryption_enabled=True, encryption_algorithm="AES-256-GCM"),
    )
    restored = NotificationMetadata.from_dict(metadata.to_dict())
    assert isinstance(restored.detail, HealthcareMetadata)
    assert restored.detail.patient_id == "p-1"
    assert restored.detail.encryption_algorithm == "AES-256-GCM"


def test_notification_due():
    assert Notification().is_due()
    later = Notification(scheduled_at=utcnow() + timedelta(minutes=5))
    assert not later.is_due()
    assert later.is_due(utcnow() + timedelta(minutes=6))


def test_ids_are_prefixed():
    assert Notification().id.startswith("notif_")
    assert NotificationBatch().id.startswith("batch_")


def test_batch_defaults():
    batch = NotificationBatch()
    assert batch.status == BatchStatus.PENDING
    assert batch.name.startswith("Batch ")
    assert batch.to_dict()["errors"] == []
