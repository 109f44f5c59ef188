from fastapi import APIRouter, Depends

from app.core.security import AuthenticatedUser, get_current_user
from app.dependencies import get_effective_identity, get_stock_sync_service
from app.routes.responses import to_response
from app.schemas.identity import EffectiveIdentity
from app.services.stock_sync_service import StockSyncService

router = APIRouter(prefix="/api", tags=["marketplace"])


@router.get("/identity")
async def resolve_identity(
    user: AuthenticatedUser = Depends(get_current_user),
    service: StockSyncService = Depends(get_stock_sync_service),
):
    """Which store account the caller acts under"""
    return to_response(await service.resolve_identity(user.user_id, user.email))


@router.get("/marketplace/auth/test")
async def test_authentication(
    user: AuthenticatedUser = Depends(get_current_user),
    service: StockSyncService = Depends(get_stock_sync_service),
):
    """Check the caller can authenticate with AutoTrader; failures carry suggestions"""
    return to_response(await service.test_authentication(user.user_id, user.email))


@router.get("/marketplace/limits")
async def get_limits(
    identity: EffectiveIdentity = Depends(get_effective_identity),
    service: StockSyncService = Depends(get_stock_sync_service),
):
    """Listing allowance for the dealer's advertiser account"""
    return to_response(await service.get_limits(identity))
