# app/main.py

import logging
import os
import subprocess
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.config import get_settings
from app.core.exceptions import MarketplaceSyncError
from app.core.logging_config import configure_logging
from app.core.security import require_auth
from app.database import async_session
from app.schemas.results import OperationResult
from app.services.marketplace.client import MarketplaceClient
from app.services.marketplace.credentials import DealerCredentialLoader
from app.services.marketplace.token_cache import TokenCache
from app.services.request_cache import RequestScopedCache

from app.routes import health, marketplace, stock, temp_data

configure_logging(os.environ.get("LOG_DIR", "logs"))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    # Run migrations on startup
    if os.getenv('RUN_MIGRATIONS', 'false').lower() == 'true':
        logger.info("Running database migrations...")
        result = subprocess.run(['alembic', 'upgrade', 'head'], capture_output=True, text=True)
        if result.returncode == 0:
            logger.info("Migrations completed successfully")
        else:
            logger.error(f"Migration failed: {result.stderr}")

    # Process-wide caches and client, handed to handlers through app.dependencies
    client = MarketplaceClient.from_settings(settings)
    app.state.marketplace_client = client
    app.state.token_cache = TokenCache(
        client,
        DealerCredentialLoader(async_session, settings),
        refresh_margin_seconds=settings.TOKEN_REFRESH_MARGIN_SECONDS,
        default_expires_in=settings.TOKEN_DEFAULT_EXPIRES_IN,
    )
    app.state.limits_cache = RequestScopedCache(
        "limits",
        default_ttl=settings.LIMITS_CACHE_TTL_SECONDS,
        max_entries=settings.LIMITS_CACHE_MAX_ENTRIES,
        sweep_interval=settings.CACHE_SWEEP_INTERVAL_SECONDS,
    )
    app.state.temp_data_cache = RequestScopedCache(
        "temp-data",
        default_ttl=settings.TEMP_DATA_TTL_SECONDS,
        max_entries=settings.TEMP_DATA_MAX_ENTRIES,
        sweep_interval=settings.CACHE_SWEEP_INTERVAL_SECONDS,
    )
    app.state.limits_cache.start()
    app.state.temp_data_cache.start()

    try:
        yield  # This is where the app runs
    finally:
        await app.state.limits_cache.stop()
        await app.state.temp_data_cache.stop()
        app.state.token_cache.clear()


app = FastAPI(
    title="Dealer Stock Sync",
    lifespan=lifespan
)

# Add middleware to handle HTTPS behind proxy
@app.middleware("http")
async def proxy_headers_middleware(request: Request, call_next):
    forwarded_proto = request.headers.get("x-forwarded-proto")
    if forwarded_proto == "https":
        request.scope["scheme"] = "https"
    response = await call_next(request)
    return response


@app.exception_handler(MarketplaceSyncError)
async def marketplace_sync_error_handler(request: Request, exc: MarketplaceSyncError):
    """Errors raised outside a service call (e.g. identity resolution in a dependency)"""
    result = OperationResult.failure(exc)
    return JSONResponse(status_code=result.status_code, content=result.model_dump(mode="json"))


# Include routers with authentication
app.include_router(stock.router, dependencies=[require_auth()])
app.include_router(marketplace.router, dependencies=[require_auth()])
app.include_router(temp_data.router, dependencies=[require_auth()])
app.include_router(health.router)  # Health check should be accessible without auth
