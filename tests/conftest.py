"""Shared test fixtures for settings, the async database, and auth tokens."""

from collections.abc import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from takeout_import.core.config import Settings
from takeout_import.core.security import create_access_token
from takeout_import.models.base import Base

OWNER_ID = "user-123"


@pytest.fixture
def settings() -> Settings:
    """Test application settings with every worker prerequisite configured."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        jwt_secret_key="test-secret-key-not-for-production",
        jwt_algorithm="HS256",
        public_base_url="https://photos.example.com",
        google_client_id="google-client-id",
        google_client_secret="google-client-secret",
        fly_api_token="fly-test-token",
        cleanup_settle_seconds=0,
    )


@pytest.fixture
async def async_engine(settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create an in-memory async SQLite engine for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the in-memory engine."""
    return async_sessionmaker(async_engine, expire_on_commit=False)


@pytest.fixture
def owner_token(settings: Settings) -> str:
    """Generate a JWT access token for the test owner."""
    return create_access_token(
        subject=OWNER_ID,
        secret_key=settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )
