"""
Stock endpoints: cached reads, advert updates and full refreshes.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query

from app.dependencies import get_effective_identity, get_stock_sync_service
from app.routes.responses import to_response
from app.schemas.identity import EffectiveIdentity
from app.schemas.stock import ListingRowUpdate
from app.services.stock_sync_service import StockSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["stock"])


@router.get("/stock/cache/stats")
async def cache_stats(
    identity: EffectiveIdentity = Depends(get_effective_identity),
    service: StockSyncService = Depends(get_stock_sync_service),
):
    """Counts and fetch timestamps for the dealer's cached stock"""
    return to_response(await service.get_cache_stats(identity))


@router.delete("/stock/cache/stale")
async def clear_stale_cache(
    older_than_hours: int = Query(720, ge=0),
    identity: EffectiveIdentity = Depends(get_effective_identity),
    service: StockSyncService = Depends(get_stock_sync_service),
):
    """Delete records that have left AutoTrader and not been seen for older_than_hours"""
    return to_response(await service.clear_stale(identity, older_than_hours))


@router.post("/stock/refresh")
async def refresh_stock(
    identity: EffectiveIdentity = Depends(get_effective_identity),
    service: StockSyncService = Depends(get_stock_sync_service),
):
    """Pull the dealer's full stock list from AutoTrader into the cache"""
    return to_response(await service.refresh_stock(identity))


@router.get("/stock/{stock_id}")
async def get_stock(
    stock_id: str,
    refresh: bool = Query(False, description="Bypass the cache and refetch from AutoTrader"),
    identity: EffectiveIdentity = Depends(get_effective_identity),
    service: StockSyncService = Depends(get_stock_sync_service),
):
    return to_response(await service.get_stock(identity, stock_id, force_refresh=refresh))


@router.patch("/stock/{stock_id}/adverts")
async def update_stock_adverts(
    stock_id: str,
    changeset: Dict[str, Any] = Body(...),
    identity: EffectiveIdentity = Depends(get_effective_identity),
    service: StockSyncService = Depends(get_stock_sync_service),
):
    """
    Apply a change-set (adverts, metadata, advertiser, vehicle or features).

    Only fields that differ from the cached record are sent to AutoTrader.
    """
    return to_response(await service.apply_stock_update(identity, stock_id, changeset))


@router.patch("/stock/{stock_id}/advertiser")
async def update_stock_advertiser(
    stock_id: str,
    advertiser: Dict[str, Any] = Body(..., embed=True),
    advertiser_id: Optional[str] = Query(None, alias="advertiserId"),
    identity: EffectiveIdentity = Depends(get_effective_identity),
    service: StockSyncService = Depends(get_stock_sync_service),
):
    """Advertiser name, contact details, strapline and location"""
    changeset = _with_advertiser_id({"advertiser": advertiser}, advertiser_id)
    return to_response(await service.apply_stock_update(identity, stock_id, changeset))


@router.patch("/stock/{stock_id}/vehicle")
async def update_stock_vehicle(
    stock_id: str,
    vehicle: Optional[Dict[str, Any]] = Body(None),
    features: Optional[List[Dict[str, Any]]] = Body(None),
    advertiser_id: Optional[str] = Query(None, alias="advertiserId"),
    identity: EffectiveIdentity = Depends(get_effective_identity),
    service: StockSyncService = Depends(get_stock_sync_service),
):
    """Vehicle details, optionally with the feature list"""
    changeset: Dict[str, Any] = {}
    if vehicle is not None:
        changeset["vehicle"] = vehicle
    if features is not None:
        changeset["features"] = features
    return to_response(
        await service.apply_stock_update(identity, stock_id, _with_advertiser_id(changeset, advertiser_id))
    )


@router.patch("/stock/{stock_id}/features")
async def update_stock_features(
    stock_id: str,
    features: List[Dict[str, Any]] = Body(..., embed=True),
    advertiser_id: Optional[str] = Query(None, alias="advertiserId"),
    identity: EffectiveIdentity = Depends(get_effective_identity),
    service: StockSyncService = Depends(get_stock_sync_service),
):
    """Replace the feature list; sent only when the set of feature names changes"""
    changeset = _with_advertiser_id({"features": features}, advertiser_id)
    return to_response(await service.apply_stock_update(identity, stock_id, changeset))


@router.delete("/stock/{stock_id}/cache")
async def remove_cached_stock(
    stock_id: str,
    identity: EffectiveIdentity = Depends(get_effective_identity),
    service: StockSyncService = Depends(get_stock_sync_service),
):
    """Drop one record from the local cache. The AutoTrader listing is unchanged."""
    return to_response(await service.remove_cached_stock(identity, stock_id))


def _with_advertiser_id(changeset: Dict[str, Any], advertiser_id: Optional[str]) -> Dict[str, Any]:
    if advertiser_id:
        changeset["advertiserId"] = advertiser_id
    return changeset


@router.post("/listings/update-row")
async def update_listing_row(
    row_update: ListingRowUpdate,
    identity: EffectiveIdentity = Depends(get_effective_identity),
    service: StockSyncService = Depends(get_stock_sync_service),
):
    """Price and channel edits from the listings grid"""
    return to_response(await service.update_listing_row(identity, row_update))
