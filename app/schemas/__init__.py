"""
Schema exports for the application.
"""

# Base schemas
from .base import BaseSchema, ChangesetSchema

from .identity import EffectiveIdentity, AdvertiserResolution, MarketplaceCredentials
from .results import ErrorDetail, OperationResult
from .stock import (
    StockRecordRead,
    StockUpdateRequest,
    AdvertsChange,
    RetailAdvertsChange,
    MetadataChange,
    LocationChange,
    AdvertiserChange,
    VehicleChange,
    FeatureChange,
    ListingRowUpdate,
    TempDataCreate
)
