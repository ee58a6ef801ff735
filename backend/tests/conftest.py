"""Shared test configuration and fixtures.

Each test gets its own file-backed SQLite database (via aiosqlite) with all
tables created from the models. Services commit for real, so isolation comes
from the fresh database rather than an outer rollback.
"""

import uuid
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from commerce.config import settings
from commerce.database import Base, get_db
from commerce.main import app
from commerce.models.subscription import SubscriptionRecord
from commerce.models.user import User
from factories import PRICE_IDS, WEBHOOK_SECRET, auth_headers_for, create_subscription, create_user

# ---------------------------------------------------------------------------
# Database: fresh SQLite file per test
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'commerce_test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to use the test DB session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def gateway_settings(monkeypatch):
    """Price ids, webhook secret and a fast retry policy for every test."""
    for name, value in PRICE_IDS.items():
        monkeypatch.setattr(settings, name, value)
    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "gateway_backoff_seconds", 0.0)
    monkeypatch.setattr(settings, "gateway_backoff_max_seconds", 0.0)
    return settings


# ---------------------------------------------------------------------------
# Convenience fixtures: users and subscriptions
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    user = await create_user(db_session, gateway_customer_id=f"cus_{uuid.uuid4().hex[:10]}")
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict[str, str]:
    return auth_headers_for(test_user)


@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession) -> User:
    user = await create_user(db_session, role="admin")
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def admin_headers(admin_user: User) -> dict[str, str]:
    return auth_headers_for(admin_user)


@pytest_asyncio.fixture
async def pro_subscription(db_session: AsyncSession, test_user: User) -> SubscriptionRecord:
    """Active Pro monthly, halfway through a 30-day period around ``NOW``."""
    subscription = await create_subscription(db_session, test_user)
    await db_session.commit()
    return subscription
