import os

# must be set before app modules build the engine
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["RABBITMQ_URL"] = ""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from app.config import Settings
from app.core.exceptions import EmailDeliveryError
from app.database import get_db
from app.dependencies.services import get_publisher
from app.main import app
from app.models.base import Base
from app.models.email_delivery import EmailProvider
from app.services.email import EmailService
from app.services.notification import NotificationService


class FakePublisher:
    """Records socket events instead of putting them on a channel."""

    def __init__(self, available=True):
        self.available = available
        self.events = []

    def is_available(self):
        return self.available

    async def publish(self, event):
        if not self.available:
            return False
        self.events.append(event)
        return True


class FakeTransport:
    host = "smtp.test"
    port = 587

    def __init__(self, fail=False, fail_verify=False):
        self.fail = fail
        self.fail_verify = fail_verify
        self.sent = []
        # when set, send blocks until the event fires
        self.gate = None
        self.blocked = False

    async def verify(self):
        if self.fail_verify:
            raise EmailDeliveryError("authentication failed")

    async def send(self, sender, to, subject, html):
        if self.gate is not None:
            self.blocked = True
            await self.gate.wait()
        if self.fail:
            raise EmailDeliveryError("connection refused")
        self.sent.append({"from": sender, "to": to, "subject": subject, "html": html})
        return f"<{len(self.sent)}@stablecoin.com>"


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def notification_service(db_session, publisher):
    return NotificationService(db_session, publisher)


@pytest.fixture
def email_settings():
    return Settings(
        EMAIL_PROVIDER="sendgrid",
        SENDGRID_API_KEY="SG.test-key",
        EMAIL_FROM="alerts@stablecoin.test",
        EMAIL_MAX_RETRIES=3,
        EMAIL_CIRCUIT_FAILURE_THRESHOLD=100,
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
async def email_service(session_factory, email_settings, transport):
    service = EmailService(
        session_factory,
        email_settings,
        transport_factory=lambda settings: (transport, EmailProvider.SENDGRID),
    )
    await service.initialize()
    return service


@pytest.fixture
async def disabled_email_service(session_factory, email_settings):
    service = EmailService(
        session_factory,
        email_settings,
        transport_factory=lambda settings: (None, EmailProvider.SENDGRID),
    )
    await service.initialize()
    return service


@pytest.fixture
async def client(session_factory, publisher):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_publisher] = lambda: publisher
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
