from .dealer import Dealer, StoreConfig, TeamMember
from .stock_cache import StockCache
from .stock_sync_log import StockSyncLog
from .inventory_details import InventoryDetails, SaleDetails

# This ensures all models are registered with SQLAlchemy
__all__ = [
    'Dealer',
    'StoreConfig',
    'TeamMember',
    'StockCache',
    'StockSyncLog',
    'InventoryDetails',
    'SaleDetails',
]
