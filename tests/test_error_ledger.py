import csv
import io
import json

import pytest

from courier.errors import ChannelDispatchError, ValidationError
from courier.models.notification import NotificationChannel
from courier.services.error_ledger import CSV_HEADERS
from courier.storage.error_storage import ErrorFilters


async def _fail(engine, notification, message, code, retryable=True):
    notification = await engine.state_machine.start_attempt(notification)
    error = ChannelDispatchError(notification.channel.value, message, code=code, retryable=retryable)
    return await engine.state_machine.record_failure(notification, error)


@pytest.mark.asyncio
async def test_record_keeps_dispatch_error_fields(engine, make_notification):
    n = await make_notification(channel="sms")
    await _fail(engine, n, "Invalid number", "http_400", retryable=False)

    [entry] = await engine.notification_service.get_notification_errors(n.id)
    assert entry.notification_id == n.id
    assert entry.channel == NotificationChannel.SMS
    assert entry.error_message == "Invalid number"
    assert entry.error_code == "http_400"
    assert entry.retryable is False


@pytest.mark.asyncio
async def test_list_filters_and_joins_notification(engine, make_notification):
    email = await make_notification()
    sms = await make_notification(channel="sms", type="lab-results")
    await _fail(engine, email, "SMTP 421", "smtp_error")
    await _fail(engine, sms, "Invalid number", "http_400", retryable=False)

    errors, total = await engine.notification_service.get_all_errors(ErrorFilters(retryable=False))
    assert total == 1
    assert errors[0]["notification_id"] == sms.id
    assert errors[0]["type"] == "lab-results"
    assert errors[0]["recipient_email"] == "patient@example.com"

    errors, total = await engine.notification_service.get_all_errors(ErrorFilters(channel="email"))
    assert [e["notification_id"] for e in errors] == [email.id]


@pytest.mark.asyncio
async def test_export_csv(engine, make_notification):
    first = await make_notification()
    second = await make_notification(channel="sms")
    await _fail(engine, first, "SMTP 421", "smtp_error")
    await _fail(engine, second, "Invalid number, check format", "http_400", retryable=False)

    body = await engine.notification_service.export_errors(format="csv")

    rows = list(csv.reader(io.StringIO(body)))
    assert rows[0] == CSV_HEADERS
    assert len(rows) == 3
    by_id = {row[1]: row for row in rows[1:]}
    assert by_id[first.id][6] == "Yes"
    assert by_id[second.id][6] == "No"
    assert by_id[second.id][4] == "Invalid number, check format"


@pytest.mark.asyncio
async def test_export_json(engine, make_notification):
    n = await make_notification()
    await _fail(engine, n, "SMTP 421", "smtp_error")

    body = await engine.notification_service.export_errors(ErrorFilters(channel="email"), "json")

    document = json.loads(body)
    assert document["error_count"] == 1
    assert document["filters"]["channel"] == "email"
    assert document["errors"][0]["error_code"] == "smtp_error"
    assert "exported_at" in document


@pytest.mark.asyncio
async def test_export_unknown_format(engine):
    with pytest.raises(ValidationError):
        await engine.notification_service.export_errors(format="xml")


@pytest.mark.asyncio
async def test_statistics_grouping(engine, make_notification):
    for code in ("smtp_error", "smtp_error", None):
        n = await make_notification()
        await _fail(engine, n, "failure", code)

    stats = await engine.notification_service.get_error_statistics(days=7, group_by="error_code")
    counts = {row["error_code"]: row["count"] for row in stats}
    assert counts == {"smtp_error": 2, "unknown": 1}

    with pytest.raises(ValidationError):
        await engine.notification_service.get_error_statistics(group_by="recipient")
    with pytest.raises(ValidationError):
        await engine.notification_service.get_error_statistics(days=0)
