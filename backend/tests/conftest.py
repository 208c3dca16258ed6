"""Pytest fixtures for backend tests."""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import authguard.models  # noqa: F401  registers tables on the metadata
from authguard.core.config import Settings
from authguard.db.base import Base
from authguard.main import create_app
from authguard.services.cache_store import CacheStore
from authguard.services.control_plane import AuthSecurityControlPlane
from authguard.services.security_logger import SecurityLogger

# 2023-11-14T22:13:20Z
NOW = 1_700_000_000.0

ADMIN_KEY = "test-admin-key-3f9c1d2e7a"


class FakeClock:
    """Settable wall clock in epoch seconds."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        DEBUG=True,
        ENVIRONMENT="production",
        ADMIN_API_KEY=ADMIN_KEY,
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
    )


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[FakeAsyncRedis, None]:
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def store(redis_client: FakeAsyncRedis) -> CacheStore:
    return CacheStore(redis_client, timeout=1.0)


@pytest_asyncio.fixture
async def sessionmaker() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """In-memory SQLite database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def security_logger(store: CacheStore, sessionmaker, clock: FakeClock) -> SecurityLogger:
    return SecurityLogger(store, sessionmaker, max_events=100, events_ttl=86400, clock=clock)


@pytest_asyncio.fixture
async def control_plane(settings: Settings, store: CacheStore, sessionmaker, clock: FakeClock) -> AuthSecurityControlPlane:
    return AuthSecurityControlPlane(settings, store, sessionmaker, clock=clock)


@pytest_asyncio.fixture
async def client(control_plane: AuthSecurityControlPlane) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the app wired to the test control plane."""
    app = create_app(control_plane=control_plane)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY}
