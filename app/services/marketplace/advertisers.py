"""
Advertiser id resolution and listing allowance calculation.

Store configs have gained advertiser id columns over time; the first populated
one (in the order below) is the id used against the Marketplace API.
"""
import logging
from typing import Any, Dict, List, Optional

from app.core.exceptions import ConfigNotFoundError
from app.core.utils import parse_id_list
from app.schemas.identity import AdvertiserResolution

logger = logging.getLogger(__name__)

# (attribute, label) in priority order
ADVERTISER_ID_SOURCES = [
    ("advertisement_id", "advertisement_id"),
    ("additional_advertisement_ids", "additional_advertisement_ids[0]"),
    ("primary_advertisement_id", "primary_advertisement_id"),
    ("advertisement_ids", "advertisement_ids[0]"),
]

COUNTED_ALLOWANCE_TYPES = {"Standard", "Bargain"}
COUNTED_VEHICLE_TYPES = {"Car", "Van"}


def resolve_advertiser_id(store_config: Any) -> AdvertiserResolution:
    """
    Pick the advertiser id for a store config.

    Args:
        store_config: StoreConfig row (or any object with the same attributes)

    Returns:
        AdvertiserResolution with the chosen id, the column it came from and
        every id found across all columns (deduplicated, in priority order)

    Raises:
        ConfigNotFoundError: If no column holds an advertiser id
    """
    chosen: Optional[str] = None
    source: Optional[str] = None
    all_ids: List[str] = []

    for attribute, label in ADVERTISER_ID_SOURCES:
        ids = parse_id_list(getattr(store_config, attribute, None))
        for advertiser_id in ids:
            if advertiser_id not in all_ids:
                all_ids.append(advertiser_id)
        if chosen is None and ids:
            chosen, source = ids[0], label

    if chosen is None:
        raise ConfigNotFoundError(
            "No AutoTrader advertiser ID is configured for this store",
            details=f"store config {getattr(store_config, 'email', '?')} has no advertiser ids",
        )

    logger.debug(f"Resolved advertiser id {chosen} from {source}")
    return AdvertiserResolution(advertiser_id=chosen, source=source, all_available_ids=all_ids)


def calculate_listing_allowance(advertisers_response: Dict[str, Any], advertiser_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Sum the retail listing capacity for an advertiser.

    Only Standard and Bargain allowances that cover both cars and vans count
    toward the listing limit.

    Returns:
        {"advertiser_id", "listing_count", "allowances"}
    """
    results = advertisers_response.get("results") or []
    advertiser = None
    if advertiser_id:
        advertiser = next((r for r in results if str(r.get("advertiserId")) == str(advertiser_id)), None)
    if advertiser is None and results:
        advertiser = results[0]
    if advertiser is None:
        return {"advertiser_id": advertiser_id, "listing_count": 0, "allowances": []}

    allowances = advertiser.get("autotraderAdvertAllowances") or []
    total = 0
    for allowance in allowances:
        vehicle_types = set(allowance.get("vehicleTypes") or [])
        if allowance.get("type") in COUNTED_ALLOWANCE_TYPES and COUNTED_VEHICLE_TYPES <= vehicle_types:
            total += int(allowance.get("capacity") or 0)

    return {
        "advertiser_id": str(advertiser.get("advertiserId") or advertiser_id),
        "listing_count": total,
        "allowances": allowances,
    }
