from typing import Any, Dict, List, Optional

from app.core.enums import ErrorType
from app.core.utils import utc_now


NO_STORE_CONFIG_SUGGESTIONS = [
    "Contact your administrator to set up your AutoTrader access",
    "Ensure you are using the correct email address",
    "Check if your account has been approved and activated",
]

MISSING_KEYS_SUGGESTIONS = [
    "Contact your administrator to assign AutoTrader API keys",
    "Ensure your store has been properly configured",
    "Check if your AutoTrader integration is complete",
]

INVALID_KEYS_SUGGESTIONS = [
    "Contact your administrator to verify your AutoTrader API keys",
    "Check if your AutoTrader keys have expired",
    "Ensure the keys are correctly configured in your store settings",
]

UPSTREAM_UNAVAILABLE_SUGGESTIONS = [
    "Try again in a few minutes",
    "Check your internet connection",
    "Contact support if the problem persists",
]


class BaseServiceError(Exception):
    """Base exception for all service-related errors."""
    pass


class MarketplaceSyncError(BaseServiceError):
    """
    Base exception for the stock cache and Marketplace sync layer.

    Carries everything needed to render a user facing error: a stable type,
    a message, optional details, remediation suggestions and any structured
    warnings returned by the Marketplace API.
    """

    error_type: ErrorType = ErrorType.UPSTREAM_UNAVAILABLE
    http_status: int = 500
    default_suggestions: List[str] = []

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        suggestions: Optional[List[str]] = None,
        upstream_warnings: Optional[List[Dict[str, Any]]] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        self.suggestions = list(suggestions) if suggestions is not None else list(self.default_suggestions)
        self.upstream_warnings = upstream_warnings or []
        if http_status is not None:
            self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.error_type.value,
            "message": self.message,
            "details": self.details,
            "suggestions": self.suggestions,
            "upstream_warnings": self.upstream_warnings,
            "timestamp": utc_now().isoformat(),
        }


class ConfigNotFoundError(MarketplaceSyncError):
    """Raised when a user has no store configuration or team membership."""
    error_type = ErrorType.CONFIG_NOT_FOUND
    http_status = 404
    default_suggestions = NO_STORE_CONFIG_SUGGESTIONS


class AuthenticationFailedError(MarketplaceSyncError):
    """Raised when a dealer has no usable API credentials configured."""
    error_type = ErrorType.AUTHENTICATION_FAILED
    http_status = 401
    default_suggestions = MISSING_KEYS_SUGGESTIONS


class InvalidCredentialsError(MarketplaceSyncError):
    """Raised when the Marketplace API rejects the configured credentials."""
    error_type = ErrorType.INVALID_CREDENTIALS
    http_status = 401
    default_suggestions = INVALID_KEYS_SUGGESTIONS


class UpstreamRejectedError(MarketplaceSyncError):
    """Raised when the Marketplace API refuses a request with a structured reason."""
    error_type = ErrorType.UPSTREAM_REJECTED
    http_status = 400


class UpstreamUnavailableError(MarketplaceSyncError):
    """Raised on network failures, timeouts, rate limiting and 5xx responses."""
    error_type = ErrorType.UPSTREAM_UNAVAILABLE
    http_status = 503
    default_suggestions = UPSTREAM_UNAVAILABLE_SUGGESTIONS


class ValidationError(MarketplaceSyncError):
    """Raised when a caller submits a malformed change-set."""
    error_type = ErrorType.VALIDATION_ERROR
    http_status = 400


class NotFoundError(MarketplaceSyncError):
    """Raised when a requested resource does not exist."""
    error_type = ErrorType.NOT_FOUND
    http_status = 404


class StockNotFoundError(NotFoundError):
    """Raised when a stock id is unknown to the cache and the Marketplace API."""
    pass
