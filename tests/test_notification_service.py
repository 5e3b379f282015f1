from datetime import timedelta

import pytest

from courier.errors import InvalidTransition, NotFoundError, ValidationError
from courier.models.notification import (
    HealthcareMetadata,
    NotificationContent,
    NotificationRecipient,
    NotificationStatus,
    utcnow,
)
from courier.services.confirmation import WebhookConfirmation
from courier.services.events import NOTIFICATION_CREATED
from courier.services.notification_service import derive_subject
from courier.storage.notification_storage import NotificationFilters

from fakes import FakeEngine


@pytest.mark.asyncio
async def test_create_persists_queued(engine, make_notification):
    n = await make_notification(priority="high", tags=["reminder", "reminder", "cardiology"])

    stored = await engine.notification_service.get_notification(n.id)
    assert stored.status == NotificationStatus.QUEUED
    assert stored.attempts == 0
    assert stored.max_attempts == 3
    assert stored.tags == ["reminder", "cardiology"]
    assert stored.subject == "Your appointment is tomorrow at 10:00"
    assert NOTIFICATION_CREATED in engine.event_names()


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"type": ""},
    {"channel": "fax"},
    {"priority": "whenever"},
    {"content": NotificationContent(text="")},
    {"channel": "sms", "recipient": NotificationRecipient(email="a@example.com")},
    {"max_attempts": 0},
])
async def test_create_validation(make_notification, overrides):
    with pytest.raises(ValidationError):
        await make_notification(**overrides)


def test_derive_subject():
    assert derive_subject("lab-results", NotificationContent(text="x" * 300)) == "x" * 255
    assert derive_subject("lab-results", NotificationContent()) == "lab-results notification"


@pytest.mark.asyncio
async def test_explicit_subject_kept(make_notification):
    n = await make_notification(subject="Reminder")
    assert n.subject == "Reminder"


@pytest.mark.asyncio
async def test_healthcare_notification(engine, recipient, content):
    n = await engine.notification_service.create_healthcare_notification(
        type="lab-results",
        channel="email",
        recipient=recipient,
        content=content,
        healthcare=HealthcareMetadata(patient_id="p-1", provider_id="dr-7", encryption_enabled=True),
        priority="urgent",
    )

    assert "healthcare" in n.tags
    assert n.metadata.source == "healthcare"
    data = n.metadata.to_dict()
    assert data["kind"] == "healthcare"
    assert data["healthcare"]["patient_id"] == "p-1"
    assert data["healthcare"]["encryption"]["algorithm"] == "AES-256-GCM"


@pytest.mark.asyncio
async def test_list_and_count(engine, make_notification):
    await make_notification(channel="sms")
    await make_notification()
    await make_notification(tags=["vip"])

    items, total = await engine.notification_service.list_notifications(
        NotificationFilters(channel="email", limit=1)
    )
    assert total == 2
    assert len(items) == 1

    tagged, total = await engine.notification_service.list_notifications(NotificationFilters(tags=["vip"]))
    assert total == 1
    assert await engine.notification_service.get_notification_counts() == 3


def test_filters_clamp_page_size():
    assert NotificationFilters(limit=1000).limit == 100
    assert NotificationFilters(limit=0).limit == 1
    assert NotificationFilters(offset=-5).offset == 0


@pytest.mark.asyncio
async def test_scheduled_listing(engine, make_notification):
    soon = await make_notification(scheduled_at=utcnow() - timedelta(minutes=1))
    await make_notification(scheduled_at=utcnow() + timedelta(days=1))

    scheduled = await engine.notification_service.get_scheduled_notifications()
    assert [n.id for n in scheduled] == [soon.id]


@pytest.mark.asyncio
async def test_cancel_result(engine, make_notification):
    n = await make_notification()
    result = await engine.notification_service.cancel(n.id)
    assert result.applied is True
    assert result.notification.status == NotificationStatus.CANCELLED

    again = await engine.notification_service.cancel(n.id)
    assert again.applied is False
    assert again.reason == "not_applicable"
    assert again.to_dict()["cancelled"] is False


@pytest.mark.asyncio
async def test_delete(engine, make_notification):
    n = await make_notification()
    assert await engine.notification_service.delete_notification(n.id) is True
    with pytest.raises(NotFoundError):
        await engine.notification_service.get_notification(n.id)
    with pytest.raises(NotFoundError):
        await engine.notification_service.delete_notification(n.id)


@pytest.mark.asyncio
async def test_update_status_rules(engine, make_notification):
    n = await make_notification()
    with pytest.raises(ValidationError):
        await engine.notification_service.update_status(n.id, "bogus")
    with pytest.raises(InvalidTransition):
        await engine.notification_service.update_status(n.id, "delivered")

    updated = await engine.notification_service.update_status(n.id, "processing")
    assert updated.status == NotificationStatus.PROCESSING


@pytest.mark.asyncio
async def test_webhook_confirmation_waits_for_callback(recipient, content):
    engine = FakeEngine()
    engine.confirmation = WebhookConfirmation(engine.state_machine)
    engine.dispatch_queue.confirmation = engine.confirmation
    await engine.initialize()
    try:
        n = await engine.notification_service.create_notification(
            type="reminder", channel="webhook", recipient=recipient, content=content
        )
        assert await engine.notification_service.process_notification(n.id) is True
        assert (await engine.notification_service.get_notification(n.id)).status == NotificationStatus.SENT

        delivered = await engine.confirmation.confirm(n.id)
        assert delivered.status == NotificationStatus.DELIVERED
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_queue_for_processing_requires_queued(engine, make_notification):
    n = await make_notification()
    job_id = await engine.notification_service.queue_for_processing(n.id)
    assert job_id == f"{n.id}:0"

    await engine.notification_service.cancel(n.id)
    with pytest.raises(ValidationError):
        await engine.notification_service.queue_for_processing(n.id)


@pytest.mark.asyncio
async def test_delivery_metrics(engine, make_notification):
    delivered = await make_notification()
    failed = await make_notification(max_attempts=1)
    sm = engine.state_machine
    delivered = await sm.record_success(await sm.start_attempt(delivered))
    await sm.confirm_delivery(delivered)
    await sm.transition(await sm.start_attempt(failed), NotificationStatus.FAILED)

    metrics = await engine.notification_service.get_delivery_metrics(
        utcnow() - timedelta(days=1), utcnow()
    )
    assert metrics["total_sent"] == 1
    assert metrics["total_delivered"] == 1
    assert metrics["total_failed"] == 1
    assert metrics["success_rate"] == 100.0

    with pytest.raises(ValidationError):
        await engine.notification_service.get_channel_statistics(utcnow(), utcnow() - timedelta(days=1))
