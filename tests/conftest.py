import pytest
import pytest_asyncio

from courier.models.notification import NotificationContent, NotificationRecipient
from courier.services.engine_service import set_engine_service

from fakes import FakeEngine, ScriptedSender


@pytest.fixture
def sender():
    return ScriptedSender()


@pytest_asyncio.fixture
async def engine(sender):
    """Engine over in-memory storages with an open, non-consuming inline broker"""
    engine = FakeEngine(sender=sender)
    await engine.initialize(consume=False)
    yield engine
    await engine.close()


@pytest.fixture
def recipient():
    return NotificationRecipient(
        id="patient-1",
        email="patient@example.com",
        phone="+15555550100",
        device_token="device-token-1",
        chat_channel="C012345",
        webhook_url="https://hooks.example.com/courier",
    )


@pytest.fixture
def content():
    return NotificationContent(text="Your appointment is tomorrow at 10:00")


@pytest.fixture
def make_notification(engine, recipient, content):
    """Create a queued notification through the service"""
    async def _make(**kwargs):
        params = dict(
            type="appointment-reminder",
            channel="email",
            recipient=recipient,
            content=content,
        )
        params.update(kwargs)
        return await engine.notification_service.create_notification(**params)
    return _make


@pytest.fixture
def installed_engine():
    """Install a FakeEngine as the process singleton for route tests"""
    engine = FakeEngine(sender=ScriptedSender())
    set_engine_service(engine)
    yield engine
    set_engine_service(None)
