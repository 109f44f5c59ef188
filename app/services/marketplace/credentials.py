import logging
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.exceptions import AuthenticationFailedError, NO_STORE_CONFIG_SUGGESTIONS
from app.models.dealer import StoreConfig
from app.schemas.identity import MarketplaceCredentials

logger = logging.getLogger(__name__)


class DealerCredentialLoader:
    """
    Loads the Marketplace API key pair for an effective email.

    The dealer's own keys from its store config win. The centralized keys from
    settings are used only when the store has none configured.

    The loader opens its own short session because tokens are cached for the
    whole process, independently of any one request's session.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession], settings: Settings):
        self.session_factory = session_factory
        self.settings = settings

    @property
    def has_centralized_credentials(self) -> bool:
        return bool(self.settings.MARKETPLACE_API_KEY and self.settings.MARKETPLACE_API_SECRET)

    async def __call__(self, email: str) -> MarketplaceCredentials:
        async with self.session_factory() as session:
            result = await session.execute(
                select(StoreConfig).where(func.lower(StoreConfig.email) == email.lower())
            )
            store_config = result.scalars().first()

        store_info = {
            "email": email,
            "store_name": store_config.store_name if store_config else None,
        }

        if store_config and store_config.api_key and store_config.api_secret:
            return MarketplaceCredentials(
                api_key=store_config.api_key,
                api_secret=store_config.api_secret,
                source="dealer",
                store_info=store_info,
            )

        if self.has_centralized_credentials:
            logger.info(f"No dealer API keys for {email}, using centralized credentials")
            return MarketplaceCredentials(
                api_key=self.settings.MARKETPLACE_API_KEY,
                api_secret=self.settings.MARKETPLACE_API_SECRET,
                source="centralized",
                store_info=store_info,
            )

        if store_config is None:
            raise AuthenticationFailedError(
                "Store configuration not found",
                details=f"No store configuration exists for {email}",
                suggestions=NO_STORE_CONFIG_SUGGESTIONS,
            )
        raise AuthenticationFailedError(
            "Missing AutoTrader API credentials",
            details=f"Store configuration for {email} has no API key/secret",
        )
