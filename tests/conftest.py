"""Pytest configuration and fixtures."""

import os
from typing import AsyncGenerator, List

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set DATABASE_URL for tests BEFORE importing keywarden.db
# This prevents the module from trying to create the ./data directory
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
OTHER_KEY = "ffeeddccbbaa99887766554433221100ffeeddccbbaa99887766554433221100"

os.environ.setdefault("KEYWARDEN_ENCRYPTION_KEY", TEST_KEY)

from keywarden.db import Base  # noqa: E402
from keywarden.models import *  # noqa: E402,F401,F403  Import all models to ensure they're registered
from keywarden.services.device_auth import DeviceAuthService  # noqa: E402
from keywarden.services.notifications.base import (  # noqa: E402
    ApprovalNotification,
    ApprovalNotifier,
)
from keywarden.services.rate_limiter import RateLimiter  # noqa: E402
from keywarden.services.resources import ResourceService  # noqa: E402
from keywarden.utils.encryption import EnvelopeCipher  # noqa: E402


class RecordingNotifier(ApprovalNotifier):
    """Notifier double that keeps every notification it is asked to send."""

    service_name = "recording"

    def __init__(self, fail: bool = False) -> None:
        self.sent: List[ApprovalNotification] = []
        self.fail = fail

    async def notify(self, notification: ApprovalNotification) -> bool:
        if self.fail:
            raise RuntimeError("notifier down")
        self.sent.append(notification)
        return True


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test engine (for code that opens its own sessions)."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture(scope="function")
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session with automatic rollback."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def cipher():
    return EnvelopeCipher(TEST_KEY)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(capacity=10, window_seconds=60, clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def resources(db, cipher):
    return ResourceService(db, cipher)


@pytest.fixture
def make_resource(resources):
    """Factory fixture creating a resource owned by ``owner`` with extra guardians.

    Usage:
        resource = await make_resource(guardians=["bob"], fields={"password": "s3cret"})
    """

    async def _make_resource(
        name="prod-db",
        owner="alice",
        mode="ONE_OF_N",
        guardians=(),
        fields=None,
    ):
        resource, _ = await resources.create_resource(name, owner, mode)
        for user_id in guardians:
            await resources.add_guardian(resource.id, user_id, owner)
        for field_name, value in (fields or {}).items():
            await resources.upsert_field(resource.id, field_name, value, owner)
        return resource

    return _make_resource


@pytest.fixture
async def app(cipher, limiter, notifier):
    """FastAPI app with process state set (ASGITransport does not run the lifespan)."""
    from keywarden.main import app as application

    application.state.cipher = cipher
    application.state.limiter = limiter
    application.state.notifier = notifier
    return application


@pytest.fixture
async def client(app, db):
    """Create async test client bound to the test database."""
    from httpx import ASGITransport, AsyncClient

    from keywarden.db import get_db

    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def make_token(db):
    """Mint a bearer token for ``user_id`` through the device flow."""

    async def _make_token(user_id: str) -> str:
        service = DeviceAuthService(db)
        code = await service.initiate()
        assert await service.approve_session(code.user_code, user_id)
        issued = await service.exchange(code.device_code)
        return issued.access_token

    return _make_token


@pytest.fixture
def auth_headers(make_token):
    """Authorization headers for ``user_id``."""

    async def _auth_headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {await make_token(user_id)}"}

    return _auth_headers
