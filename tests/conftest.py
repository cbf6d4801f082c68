"""
Pytest configuration and fixtures.
"""

import os
from typing import AsyncGenerator, List, Optional

# Settings require a signing key; set one before any app module is imported
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app.main import app
from backend.app.core.database import Base, get_db
from backend.app.core.resilience import RetryPolicy
from backend.app.core.security import User, Role, ROLE_SCOPES, get_current_user, oauth2_scheme
from backend.app.services.bulk_coordinator import BulkMutationCoordinator, PacingPolicy
from backend.app.services.remote_client import PlaylistMutationClient
from tests.fakes import FakeClientProvider, FakePlaylistClient, no_sleep
import backend.app.models  # noqa: F401  (registers tables on Base.metadata)

# Use in-memory SQLite for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_USER_ID = "test-user-id"

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


@pytest.fixture(scope="session")
def session_factory() -> async_sessionmaker[AsyncSession]:
    """Returns the session factory for testing."""
    return TestingSessionLocal


@pytest.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Creates a fresh database session for a test.
    Tables are created before and dropped after each test.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestingSessionLocal() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Each test runs on its own event loop; never reuse a connection across loops
    await engine.dispose()


@pytest.fixture
def fake_client() -> FakePlaylistClient:
    return FakePlaylistClient()


@pytest.fixture
def make_coordinator(db_session: AsyncSession):
    """Builds a coordinator over the test session with zero-delay retry and pacing."""
    sleeps: List[float] = []

    async def recording_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    def _make(client: Optional[PlaylistMutationClient], window: int = 1) -> BulkMutationCoordinator:
        coordinator = BulkMutationCoordinator(
            db_session,
            client_provider=FakeClientProvider(client),
            retry_policy=RetryPolicy(max_retries=3, base_delay_ms=1, max_delay_ms=4, jitter=0.0),
            pacing=PacingPolicy(add_delay_ms=0, insert_delay_ms=0, delete_delay_ms=0, concurrency_window=window),
            sleep=recording_sleep,
        )
        coordinator.sleeps = sleeps
        return coordinator

    return _make


@pytest.fixture(scope="function")
async def client(db_session: AsyncSession, fake_client: FakePlaylistClient) -> AsyncGenerator[AsyncClient, None]:
    """
    Test client with database, auth and remote client dependencies overridden.
    """
    from backend.app.api.bulk import get_coordinator

    async def override_get_db():
        try:
            yield db_session
        finally:
            pass

    async def override_get_coordinator():
        return BulkMutationCoordinator(
            db_session,
            client_provider=FakeClientProvider(app.state.test_remote_client),
            retry_policy=RetryPolicy(max_retries=2, base_delay_ms=0, max_delay_ms=0, jitter=0.0),
            pacing=PacingPolicy(add_delay_ms=0, insert_delay_ms=0, delete_delay_ms=0),
            sleep=no_sleep,
        )

    async def override_get_current_user():
        return User(user_id=app.state.test_user_id, role=Role.OWNER, scopes=ROLE_SCOPES[Role.OWNER])

    async def override_oauth2_scheme():
        return "mock-token"

    app.state.test_remote_client = fake_client
    app.state.test_user_id = TEST_USER_ID
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_coordinator] = override_get_coordinator
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[oauth2_scheme] = override_oauth2_scheme

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
