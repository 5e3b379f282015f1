import pytest

from courier.errors import ChannelDispatchError, InvalidTransition, NotFoundError
from courier.models.notification import NotificationStatus
from courier.services.events import NOTIFICATION_DELIVERED, NOTIFICATION_STATUS_UPDATED
from courier.services.state_machine import ATTEMPTS_METRIC, TRANSITIONS, can_transition


def test_terminal_statuses_have_no_exits():
    for status in NotificationStatus:
        if status.is_terminal:
            assert TRANSITIONS[status] == frozenset()


def test_can_transition_table():
    assert can_transition(NotificationStatus.QUEUED, NotificationStatus.PROCESSING)
    assert can_transition(NotificationStatus.PROCESSING, NotificationStatus.QUEUED)
    assert not can_transition(NotificationStatus.QUEUED, NotificationStatus.SENT)
    assert not can_transition(NotificationStatus.DELIVERED, NotificationStatus.QUEUED)
    assert not can_transition(NotificationStatus.SENT, NotificationStatus.FAILED)


@pytest.mark.asyncio
async def test_happy_path_counts_one_attempt(engine, make_notification):
    sm = engine.state_machine
    n = await make_notification()

    n = await sm.start_attempt(n)
    assert n.status == NotificationStatus.PROCESSING
    assert n.attempts == 0

    n = await sm.record_success(n)
    assert n.status == NotificationStatus.SENT
    assert n.attempts == 1
    assert n.sent_at is not None

    n = await sm.confirm_delivery(n)
    assert n.status == NotificationStatus.DELIVERED
    assert n.attempts == 1
    assert n.delivered_at >= n.sent_at


@pytest.mark.asyncio
async def test_transitions_publish_events_and_statistics(engine, make_notification):
    sm = engine.state_machine
    n = await make_notification()
    n = await sm.start_attempt(n)
    n = await sm.record_success(n)
    await sm.confirm_delivery(n)

    names = engine.event_names()
    assert names.count(NOTIFICATION_STATUS_UPDATED) == 3
    assert names.count(NOTIFICATION_DELIVERED) == 1
    assert engine.statistic_storage.names() == [
        "notifications_processing",
        "notifications_sent",
        ATTEMPTS_METRIC,
        "notifications_delivered",
    ]
    delivered = engine.statistic_storage.rows[-1]
    assert delivered.average_delivery_time is not None


@pytest.mark.asyncio
async def test_attempt_rollup_tracks_error_rate(engine, make_notification):
    sm = engine.state_machine
    error = ChannelDispatchError("email", "SMTP 421", code="smtp_error", retryable=True)

    n = await make_notification()
    n = await sm.record_failure(await sm.start_attempt(n), error)
    await sm.record_success(await sm.start_attempt(n))

    attempts = [s for s in engine.statistic_storage.rows if s.metric_name == ATTEMPTS_METRIC]
    assert len(attempts) == 1
    assert attempts[0].count == 2
    assert attempts[0].error_rate == 50.0


@pytest.mark.asyncio
async def test_invalid_transition_rejected(engine, make_notification):
    n = await make_notification()
    with pytest.raises(InvalidTransition) as exc:
        await engine.state_machine.transition(n, NotificationStatus.SENT)
    assert exc.value.current == "queued"
    assert exc.value.requested == "sent"

    stored = await engine.notification_storage.get_by_id(n.id)
    assert stored.status == NotificationStatus.QUEUED
    assert stored.attempts == 0


@pytest.mark.asyncio
async def test_retryable_failure_requeues_while_attempts_remain(engine, make_notification):
    sm = engine.state_machine
    n = await make_notification(max_attempts=3)
    n = await sm.start_attempt(n)

    n = await sm.record_failure(n, ChannelDispatchError("email", "SMTP down", code="smtp_error"))

    assert n.status == NotificationStatus.QUEUED
    assert n.attempts == 1
    errors = await engine.error_ledger.get_errors(n.id)
    assert len(errors) == 1
    assert errors[0].error_code == "smtp_error"
    assert errors[0].retryable is True


@pytest.mark.asyncio
async def test_permanent_failure_fails_immediately(engine, make_notification):
    sm = engine.state_machine
    n = await make_notification(max_attempts=3)
    n = await sm.start_attempt(n)

    n = await sm.record_failure(
        n, ChannelDispatchError("email", "Mailbox does not exist", code="rejected", retryable=False)
    )

    assert n.status == NotificationStatus.FAILED
    assert n.attempts == 1
    assert n.failed_at is not None


@pytest.mark.asyncio
async def test_last_attempt_failure_is_terminal(engine, make_notification):
    sm = engine.state_machine
    n = await make_notification(max_attempts=1)
    n = await sm.start_attempt(n)

    n = await sm.record_failure(n, ChannelDispatchError("email", "timeout", code="TIMEOUT"))

    assert n.status == NotificationStatus.FAILED
    assert n.attempts == n.max_attempts == 1


@pytest.mark.asyncio
async def test_stale_copy_loses_race(engine, make_notification):
    sm = engine.state_machine
    n = await make_notification()
    stale = await engine.notification_storage.get_by_id(n.id)

    await sm.start_attempt(n)

    with pytest.raises(InvalidTransition) as exc:
        await sm.cancel(stale)
    assert exc.value.current == "processing"
    stored = await engine.notification_storage.get_by_id(n.id)
    assert stored.status == NotificationStatus.PROCESSING


@pytest.mark.asyncio
async def test_cancel_only_from_queued(engine, make_notification):
    sm = engine.state_machine
    n = await make_notification()
    cancelled = await sm.cancel(n)
    assert cancelled.status == NotificationStatus.CANCELLED

    with pytest.raises(InvalidTransition):
        await sm.transition(cancelled, NotificationStatus.QUEUED)


@pytest.mark.asyncio
async def test_transition_by_id_unknown(engine):
    with pytest.raises(NotFoundError):
        await engine.state_machine.transition_by_id("notif_missing", NotificationStatus.DELIVERED)
