"""
Temporary JSON blobs handed between pages (e.g. invoice drafts).

Held in the process-local temp data cache only; they vanish on expiry or restart.
"""
import logging
import secrets

from fastapi import APIRouter, Depends

from app.core.config import Settings, get_settings
from app.core.exceptions import NotFoundError
from app.core.security import AuthenticatedUser, get_current_user
from app.core.utils import utc_now
from app.dependencies import get_temp_data_cache
from app.routes.responses import to_response
from app.schemas.results import OperationResult
from app.schemas.stock import TempDataCreate
from app.services.request_cache import RequestScopedCache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/temp-data", tags=["temp-data"])


@router.post("")
async def store_temp_data(
    payload: TempDataCreate,
    user: AuthenticatedUser = Depends(get_current_user),
    cache: RequestScopedCache = Depends(get_temp_data_cache),
    settings: Settings = Depends(get_settings),
):
    temp_id = secrets.token_urlsafe(16)
    cache.set(temp_id, {"user_id": user.user_id, "data": payload.data}, ttl=settings.TEMP_DATA_TTL_SECONDS)
    logger.debug(f"Stored temp data {temp_id} for user {user.user_id}")
    return to_response(OperationResult.ok(
        {"tempId": temp_id, "expires_in_seconds": settings.TEMP_DATA_TTL_SECONDS, "created_at": utc_now().isoformat()},
        status_code=201,
    ))


@router.get("/{temp_id}")
async def get_temp_data(
    temp_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    cache: RequestScopedCache = Depends(get_temp_data_cache),
):
    entry = cache.get(temp_id)
    # Another user's blob is reported exactly like a missing one
    if entry is None or entry["user_id"] != user.user_id:
        return to_response(OperationResult.failure(
            NotFoundError("Temporary data not found or expired", details=f"temp_id={temp_id}")
        ))
    return to_response(OperationResult.ok({"tempId": temp_id, "data": entry["data"]}))
