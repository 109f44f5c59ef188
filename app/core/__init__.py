"""
Core module exports.
"""
from .enums import (
    ErrorType,
    VatScheme,
    AdvertStatus,
    RetailChannel,
    SyncStatus,
    WriteState
)

from .exceptions import (
    BaseServiceError,
    MarketplaceSyncError,
    ConfigNotFoundError,
    AuthenticationFailedError,
    InvalidCredentialsError,
    UpstreamRejectedError,
    UpstreamUnavailableError,
    ValidationError,
    NotFoundError,
    StockNotFoundError
)

from .utils import (
    utc_now,
    parse_datetime,
    to_money,
    parse_id_list
)
