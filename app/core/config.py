# app/core/config.py

import os
from functools import lru_cache
from typing import Optional
from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings.
    Loads values from environment variables (.env file)
    """
    # Database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./stock_cache.db"

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Marketplace (AutoTrader Connect) API
    MARKETPLACE_USE_SANDBOX: bool = False
    MARKETPLACE_API_BASE_URL: Optional[str] = None  # Overrides the sandbox/production choice

    # Centralized credentials, only used when a dealer has none of its own
    MARKETPLACE_API_KEY: str = ""
    MARKETPLACE_API_SECRET: str = ""

    MARKETPLACE_AUTH_TIMEOUT: float = 15.0
    MARKETPLACE_REQUEST_TIMEOUT: float = 30.0

    # Token cache
    TOKEN_REFRESH_MARGIN_SECONDS: int = 60
    TOKEN_DEFAULT_EXPIRES_IN: int = 900  # Used when the auth response carries no expiry

    # Stock cache
    STOCK_STALE_AFTER_HOURS: int = 168
    STOCK_PAGE_SIZE: int = 100
    STOCK_MAX_PAGES: int = 100

    # Request scoped caches
    LIMITS_CACHE_TTL_SECONDS: int = 300
    LIMITS_CACHE_MAX_ENTRIES: int = 1000
    TEMP_DATA_TTL_SECONDS: int = 86400
    TEMP_DATA_MAX_ENTRIES: int = 1000
    CACHE_SWEEP_INTERVAL_SECONDS: int = 600

    # Adverts
    SUPPLIED_PRICE_MINIMUM_GBP: int = 75

    model_config = ConfigDict(
        env_file=os.environ.get('ENV_FILE', '.env') if os.path.exists('.env') else None,
        case_sensitive=True,
        extra="ignore"
    )


@lru_cache()
def get_settings():
    """Cached settings to avoid loading .env file for every request"""
    return Settings()
