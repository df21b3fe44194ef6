"""Pytest configuration and fixtures."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("CALLBACK_API_KEY", "test-callback-key")

from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from qrislink.api import app, get_callback_queue
from qrislink.models import Base, get_session
from qrislink.qris_codec import generate_sample_qris
from qrislink.services.callbacks import CallbackQueue

API_KEY = "test-api-key"

# Merchant-presented payload captured from a live static QRIS sticker.
REAL_STATIC_QRIS = (
    "00020101021126570011ID.DANA.WWW011893600915302259148102090225914810303UMI"
    "51440014ID.CO.QRIS.WWW0215ID10200176114730303UMI5204581253033605802ID"
    "5922Warung Sayur Bu Sugeng6010Kab. Demak610559567630458C7"
)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, Any]:
    """In-memory database shared by every session of a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, Any]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def callback_queue() -> CallbackQueue:
    return CallbackQueue()


@pytest_asyncio.fixture
async def client(session_factory, callback_queue) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client against the app, wired to the test database and queue."""

    async def override_session() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_callback_queue] = lambda: callback_queue
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-API-Key": API_KEY},
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def static_qris() -> str:
    return generate_sample_qris(merchant_name="Toko Maju Jaya", city="Jakarta")


@pytest.fixture
def real_static_qris() -> str:
    return REAL_STATIC_QRIS
