from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from outbox_service.core.database import Base
from outbox_service.repositories.outbox import OutboxStore


class Account(Base):
    """Stand-in business table written in the same transaction as outbox messages."""

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingPublisher:
    def __init__(self) -> None:
        self.published: list[dict] = []
        self.attempts = 0
        self.error: Exception | None = None

    async def publish(self, routing_key: str, body: bytes, *, message_id: str, headers: dict[str, str]) -> None:
        self.attempts += 1
        if self.error is not None:
            raise self.error
        self.published.append({
            "routing_key": routing_key,
            "body": body,
            "message_id": message_id,
            "headers": headers,
        })


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'outbox.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def test_async_session_maker(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(test_async_session_maker):
    async with test_async_session_maker() as session:
        yield session


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(db_session, clock):
    return OutboxStore(db_session, clock=clock)


@pytest.fixture
def publisher():
    return RecordingPublisher()
