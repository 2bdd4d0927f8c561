"""Pytest fixtures for support messaging tests.

Database tests run against a fresh in-memory SQLite database per test. The
engine uses a single shared connection, so the test's session and any
session the message router opens see the same data.
"""

import uuid
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database.base import Base
from src.database.engine import build_async_engine
from src.models.enums import UserRole
from src.models.user import User
from src.modules.identity.auth import ChatIdentity
from src.modules.realtime.presence import PresenceRegistry
from src.modules.realtime.router_service import MessageRouter

TEST_DATABASE_URL = "sqlite+aiosqlite://"


class FakeConnection:
    """Stands in for a WebSocket; records every frame sent to it."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False

    async def send_json(self, data: dict) -> None:
        if self.closed:
            raise RuntimeError("Cannot send once the connection is closed")
        self.sent.append(data)

    def of_type(self, envelope_type: str) -> list[dict]:
        return [frame for frame in self.sent if frame["type"] == envelope_type]


class RecordingDelivery:
    def __init__(self) -> None:
        self.delivered: list[uuid.UUID] = []

    def deliver(self, notification_ids: list[uuid.UUID]) -> None:
        self.delivered.extend(notification_ids)


@pytest_asyncio.fixture
async def async_test_engine():
    engine = build_async_engine(TEST_DATABASE_URL, echo=False, pool_reset_on_return=None)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(async_test_engine):
    return async_sessionmaker(async_test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


async def _make_user(db: AsyncSession, email: str, role: UserRole, first_name: str) -> User:
    user = User(email=email, first_name=first_name, last_name="Tester", role=role)
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def admin_user(db) -> User:
    return await _make_user(db, "alice@support.test", UserRole.ADMIN, "Alice")


@pytest_asyncio.fixture
async def second_admin(db) -> User:
    return await _make_user(db, "bob@support.test", UserRole.ADMIN, "Bob")


@pytest_asyncio.fixture
async def customer_user(db) -> User:
    return await _make_user(db, "carol@example.com", UserRole.USER, "Carol")


@pytest.fixture
def admin_identity(admin_user) -> ChatIdentity:
    return ChatIdentity(user_id=admin_user.id, is_admin=True, email=admin_user.email)


@pytest.fixture
def customer_identity(customer_user) -> ChatIdentity:
    return ChatIdentity(user_id=customer_user.id, email=customer_user.email, name="Carol")


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


@pytest.fixture
def presence() -> PresenceRegistry:
    return PresenceRegistry()


@pytest.fixture
def message_router(presence, session_factory, delivery) -> MessageRouter:
    return MessageRouter(
        presence=presence,
        session_factory=session_factory,
        delivery=delivery,
        greeting="Hello! How can we help you with your gold today?",
    )


@pytest.fixture
def open_connection(message_router):
    """Open a fake live connection on the router; returns (connection_id, connection)."""

    def _open() -> tuple[str, FakeConnection]:
        connection = FakeConnection()
        return message_router.open(connection), connection

    return _open
