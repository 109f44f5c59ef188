from .mock_marketplace import FakeMarketplaceClient, make_stock_item
from .seed_data import ADVERTISER_ID, OWNER_EMAIL, OWNER_ID, TEAM_DEALER_ID, TEAM_EMAIL, cache_stock_item

__all__ = [
    "FakeMarketplaceClient",
    "make_stock_item",
    "ADVERTISER_ID",
    "OWNER_EMAIL",
    "OWNER_ID",
    "TEAM_DEALER_ID",
    "TEAM_EMAIL",
    "cache_stock_item",
]
