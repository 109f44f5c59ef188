# tests/conftest.py
import os

# Must be set before anything imports app.database
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["LOG_DIR"] = ""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import Settings, get_settings
from app.database import Base
from app.dependencies import (
    get_db,
    get_limits_cache,
    get_marketplace_client,
    get_temp_data_cache,
    get_token_cache,
)
from app.main import app
from app.models.dealer import Dealer, StoreConfig, TeamMember
from app.schemas.identity import EffectiveIdentity, MarketplaceCredentials
from app.services.marketplace.token_cache import TokenCache
from app.services.request_cache import RequestScopedCache
from app.services.stock_sync_service import StockSyncService

from tests.mocks.mock_marketplace import FakeMarketplaceClient, make_stock_item
from tests.mocks.seed_data import (
    ADVERTISER_ID,
    OWNER_EMAIL,
    OWNER_ID,
    TEAM_DEALER_ID,
    TEAM_EMAIL,
    cache_stock_item,
)

# In-memory SQLite shared through a single connection
TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest.fixture
def settings():
    """Provide test settings"""
    return Settings(
        DATABASE_URL=TEST_DATABASE_URL,
        MARKETPLACE_API_BASE_URL="https://api-sandbox.test",
        MARKETPLACE_API_KEY="",
        MARKETPLACE_API_SECRET="",
    )


@pytest.fixture(scope="function")
async def test_engine():
    """Create and configure the test database engine (function-scoped)."""
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Provide a database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# Seed data

@pytest.fixture
async def store_owner(db_session):
    """A store owner with keys, plus a team member who also has a (stale) config of their own"""
    owner = Dealer(id=OWNER_ID, user_id="user_owner", name="Fordham Cars", email=OWNER_EMAIL)
    team_dealer = Dealer(id=TEAM_DEALER_ID, user_id="user_team", name="Sam Smith", email=TEAM_EMAIL)
    db_session.add_all([owner, team_dealer])
    await db_session.flush()

    db_session.add_all([
        StoreConfig(
            email=OWNER_EMAIL,
            user_id="user_owner",
            store_name="Fordham Cars",
            advertisement_id=f'["{ADVERTISER_ID}"]',
            api_key="owner-key",
            api_secret="owner-secret",
        ),
        StoreConfig(
            email=TEAM_EMAIL,
            user_id="user_team",
            store_name="Sam's Old Store",
            primary_advertisement_id="99999999",
            api_key="team-key",
            api_secret="team-secret",
        ),
        TeamMember(
            store_owner_id=OWNER_ID,
            user_id="user_team",
            name="Sam Smith",
            email=TEAM_EMAIL,
            status="active",
        ),
    ])
    await db_session.commit()
    return owner


@pytest.fixture
def owner_identity():
    return EffectiveIdentity(
        requesting_user_id="user_owner",
        effective_email=OWNER_EMAIL,
        is_delegated=False,
        dealer_id=OWNER_ID,
    )


@pytest.fixture
async def cached_stock(db_session, store_owner):
    """STK-1001: £1000 inc VAT car, freshly cached for the store owner"""
    return await cache_stock_item(db_session, OWNER_ID, make_stock_item())


# Marketplace fakes and shared caches

@pytest.fixture
def fake_client():
    return FakeMarketplaceClient()


@pytest.fixture
def credentials_loader():
    async def load(email):
        return MarketplaceCredentials(
            api_key=f"key-for-{email}",
            api_secret="secret",
            source="dealer",
            store_info={"email": email, "store_name": "Fordham Cars"},
        )
    return load


@pytest.fixture
def token_cache(fake_client, credentials_loader):
    return TokenCache(fake_client, credentials_loader)


@pytest.fixture
def limits_cache():
    return RequestScopedCache("limits", default_ttl=300, max_entries=1000)


@pytest.fixture
def temp_data_cache():
    return RequestScopedCache("temp-data", default_ttl=86400, max_entries=100)


@pytest.fixture
def sync_service(db_session, token_cache, fake_client, limits_cache, settings):
    return StockSyncService(db_session, token_cache, fake_client, limits_cache, settings)


@pytest.fixture
async def api_client(session_factory, token_cache, fake_client, limits_cache, temp_data_cache, settings):
    """HTTP client against the app with fakes swapped in for the process-wide objects"""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_token_cache] = lambda: token_cache
    app.dependency_overrides[get_marketplace_client] = lambda: fake_client
    app.dependency_overrides[get_limits_cache] = lambda: limits_cache
    app.dependency_overrides[get_temp_data_cache] = lambda: temp_data_cache

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
