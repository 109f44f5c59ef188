from typing import AsyncGenerator
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.security import AuthenticatedUser, get_current_user
from app.database import async_session
from app.schemas.identity import EffectiveIdentity
from app.services.identity_service import CredentialResolver
from app.services.marketplace.client import MarketplaceClient
from app.services.marketplace.token_cache import TokenCache
from app.services.request_cache import RequestScopedCache
from app.services.stock_sync_service import StockSyncService


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


# Process-wide objects, created once in the application lifespan

def get_marketplace_client(request: Request) -> MarketplaceClient:
    return request.app.state.marketplace_client


def get_token_cache(request: Request) -> TokenCache:
    return request.app.state.token_cache


def get_limits_cache(request: Request) -> RequestScopedCache:
    return request.app.state.limits_cache


def get_temp_data_cache(request: Request) -> RequestScopedCache:
    return request.app.state.temp_data_cache


def get_stock_sync_service(
    db: AsyncSession = Depends(get_db),
    token_cache: TokenCache = Depends(get_token_cache),
    client: MarketplaceClient = Depends(get_marketplace_client),
    limits_cache: RequestScopedCache = Depends(get_limits_cache),
    settings: Settings = Depends(get_settings),
) -> StockSyncService:
    return StockSyncService(db, token_cache, client, limits_cache, settings)


async def get_effective_identity(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> EffectiveIdentity:
    """
    Resolve the caller's effective identity for this request.

    Raises ConfigNotFoundError, rendered by the application's error handler.
    """
    return await CredentialResolver(db).resolve(user.user_id, user.email)
