"""
Shared enums and constants used across the application.
"""

from enum import Enum


class ErrorType(str, Enum):
    """Stable error types surfaced to callers in every error result"""
    CONFIG_NOT_FOUND = "CONFIG_NOT_FOUND"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    UPSTREAM_REJECTED = "UPSTREAM_REJECTED"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


class VatScheme(str, Enum):
    """VAT scheme stored on purchase-accounting records"""
    NO_VAT = "no_vat"
    INCLUDES = "includes"
    EXCLUDES = "excludes"


class AdvertStatus(str, Enum):
    PUBLISHED = "PUBLISHED"
    NOT_PUBLISHED = "NOT_PUBLISHED"


class RetailChannel(str, Enum):
    """Retail advert channels, keyed as they appear under adverts.retailAdverts"""
    AUTOTRADER = "autotraderAdvert"
    ADVERTISER = "advertiserAdvert"
    LOCATOR = "locatorAdvert"
    EXPORT = "exportAdvert"
    PROFILE = "profileAdvert"


class UpstreamWarningType(str, Enum):
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


class SyncStatus(str, Enum):
    """Outcome of a full stock refresh"""
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    ERROR = "ERROR"


class WriteState(str, Enum):
    """Stages of a single stock write, in order"""
    PENDING_AUTH = "PENDING_AUTH"
    AUTHENTICATED = "AUTHENTICATED"
    DIFFED = "DIFFED"
    SENT = "SENT"
    RECONCILED = "RECONCILED"
    CACHE_UPDATED = "CACHE_UPDATED"
    UPSTREAM_REJECTED = "UPSTREAM_REJECTED"


class TeamMemberStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
