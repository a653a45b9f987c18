"""Shared pytest fixtures for test suite."""

import os
from collections.abc import AsyncGenerator

# Set test environment variables BEFORE any contentcore imports
# This ensures tracing and other features are disabled during initialization
os.environ["ENVIRONMENT"] = "testing"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["OTEL_ENABLED"] = "false"  # Disable OpenTelemetry to prevent background threads
os.environ["VALKEY_URL"] = ""  # Module-level cache client falls back to FakeRedis
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CURSOR_HMAC_SECRET"] = "test-cursor-secret"

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from contentcore.core.cache import RedisCacheStore
from contentcore.core.config import Settings
from contentcore.main import app
from contentcore.models import Base
from contentcore.repositories.cursor import SignedCursorCodec
from contentcore.services.article import ArticleService
from contentcore.services.cache_aside import CacheOptions
from contentcore.services.tag import TagService


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Settings configured for testing."""
    return Settings(environment="testing", log_level="WARNING")


# ===== Database Fixtures =====


@pytest_asyncio.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory SQLite database per test.

    StaticPool keeps a single connection so every session sees the same
    in-memory database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine, configured like the app's."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Standalone session for arranging and inspecting test data."""
    async with session_factory() as session:
        yield session


# ===== Cache Fixtures =====


@pytest_asyncio.fixture
async def cache() -> AsyncGenerator[FakeAsyncRedis, None]:
    """In-memory Redis, flushed before and after each test."""
    client = FakeAsyncRedis(decode_responses=True)
    await client.flushdb()

    yield client

    await client.flushdb()
    await client.aclose()


@pytest.fixture
def cache_store(cache: FakeAsyncRedis) -> RedisCacheStore:
    return RedisCacheStore(cache)


# ===== Service Fixtures =====


@pytest.fixture
def cursor_codec() -> SignedCursorCodec:
    return SignedCursorCodec("test-cursor-secret")


@pytest.fixture
def article_service(
    session_factory: async_sessionmaker[AsyncSession],
    cache_store: RedisCacheStore,
    cursor_codec: SignedCursorCodec,
) -> ArticleService:
    return ArticleService(
        session_factory,
        cache_store,
        cache_options=CacheOptions(enabled=True, ttl_seconds=300),
        cursor_codec=cursor_codec,
    )


@pytest.fixture
def tag_service(
    session_factory: async_sessionmaker[AsyncSession],
    cache_store: RedisCacheStore,
    cursor_codec: SignedCursorCodec,
) -> TagService:
    return TagService(
        session_factory,
        cache_store,
        cache_options=CacheOptions(enabled=True, ttl_seconds=300),
        cursor_codec=cursor_codec,
    )


# ===== API Client Fixtures =====


@pytest_asyncio.fixture
async def async_client() -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for the FastAPI app.

    Example:
        async def test_endpoint(async_client: AsyncClient):
            response = await async_client.get("/health")
            assert response.status_code == 200
    """
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client
