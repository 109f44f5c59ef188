import json
import logging
import httpx
from typing import Any, Dict, List, Optional

from app.core.config import Settings
from app.core.enums import UpstreamWarningType
from app.core.exceptions import (
    InvalidCredentialsError,
    MarketplaceSyncError,
    StockNotFoundError,
    UpstreamRejectedError,
    UpstreamUnavailableError,
)

logger = logging.getLogger(__name__)


def parse_upstream_warnings(body: Any) -> List[Dict[str, Any]]:
    """
    Extract the Marketplace's structured warnings from an error body.

    The Marketplace reports problems as
    {"warnings": [{"type": "ERROR", "feature": "...", "message": "..."}]}.
    """
    if isinstance(body, (str, bytes)):
        try:
            body = json.loads(body)
        except ValueError:
            return []
    if not isinstance(body, dict):
        return []
    warnings = body.get("warnings")
    if not isinstance(warnings, list):
        return []
    return [w for w in warnings if isinstance(w, dict) and w.get("message")]


def _primary_message(warnings: List[Dict[str, Any]]) -> Optional[str]:
    for warning in warnings:
        if str(warning.get("type", "")).upper() == UpstreamWarningType.ERROR.value:
            return warning["message"]
    return warnings[0]["message"] if warnings else None


def classify_error_response(
    status_code: int,
    body_text: str,
    reason: str = "",
    endpoint: str = "",
) -> MarketplaceSyncError:
    """
    Map a non-2xx Marketplace response onto the error taxonomy.

    Args:
        status_code: HTTP status returned by the Marketplace
        body_text: Raw response body, inspected for structured warnings
        reason: HTTP reason phrase, used when the body carries no message
        endpoint: Request path, for the error details

    Returns:
        The MarketplaceSyncError subclass instance to raise
    """
    warnings = parse_upstream_warnings(body_text)
    message = _primary_message(warnings) or reason or f"HTTP {status_code}"
    details = f"{endpoint} returned HTTP {status_code}" if endpoint else f"HTTP {status_code}"

    if status_code in (401, 403):
        return InvalidCredentialsError(
            "AutoTrader rejected the API credentials",
            details=f"{details}: {message}",
            upstream_warnings=warnings,
        )
    if status_code == 404:
        return StockNotFoundError(message, details=details, upstream_warnings=warnings)
    if status_code == 429:
        return UpstreamUnavailableError(
            "AutoTrader rate limit exceeded, please try again shortly",
            details=details,
            upstream_warnings=warnings,
        )
    if status_code >= 500:
        return UpstreamUnavailableError(
            "AutoTrader is currently unavailable",
            details=f"{details}: {message}",
            upstream_warnings=warnings,
        )
    return UpstreamRejectedError(
        message,
        details=details,
        upstream_warnings=warnings,
        http_status=status_code,
    )


class MarketplaceClient:
    """
    Thin async transport for the AutoTrader Connect API.

    Attaches the bearer token, serialises bodies and turns non-2xx responses
    into MarketplaceSyncError subclasses. It never retries; callers surface
    failures immediately.

    Documentation: https://developers.autotrader.co.uk/
    """

    PRODUCTION_BASE_URL = "https://api.autotrader.co.uk"
    SANDBOX_BASE_URL = "https://api-sandbox.autotrader.co.uk"

    def __init__(
        self,
        base_url: Optional[str] = None,
        use_sandbox: bool = False,
        timeout: float = 30.0,
        auth_timeout: float = 15.0,
    ):
        """
        Initialize the Marketplace client

        Args:
            base_url: Explicit API root, overrides use_sandbox
            use_sandbox: Whether to use the sandbox environment
            timeout: Timeout in seconds for data calls
            auth_timeout: Timeout in seconds for the authenticate call
        """
        self.use_sandbox = use_sandbox
        self.base_url = (base_url or (self.SANDBOX_BASE_URL if use_sandbox else self.PRODUCTION_BASE_URL)).rstrip("/")
        self.timeout = timeout
        self.auth_timeout = auth_timeout
        logger.info(f"Initializing MarketplaceClient against {self.base_url}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "MarketplaceClient":
        return cls(
            base_url=settings.MARKETPLACE_API_BASE_URL,
            use_sandbox=settings.MARKETPLACE_USE_SANDBOX,
            timeout=settings.MARKETPLACE_REQUEST_TIMEOUT,
            auth_timeout=settings.MARKETPLACE_AUTH_TIMEOUT,
        )

    def _get_headers(self, token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def send(
        self,
        method: str,
        path: str,
        token: Optional[str] = None,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Make a request to the Marketplace API

        Args:
            method: HTTP method (GET, POST, PATCH)
            path: API path (without base URL)
            token: Bearer token, omitted for the authenticate call
            body: JSON payload
            params: Query parameters

        Returns:
            Dict: Parsed response body ({} for empty responses)

        Raises:
            MarketplaceSyncError: classified by classify_error_response, or
            UpstreamUnavailableError for timeouts and transport failures
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        logger.debug(f"Making {method} request to {url} params={params}")
        if body:
            logger.debug(f"Body: {json.dumps(body)[:500]}")

        try:
            async with httpx.AsyncClient(timeout=timeout or self.timeout) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(token),
                    json=body,
                    params=params,
                )
        except httpx.TimeoutException as e:
            logger.error(f"Timeout calling {method} {path}: {e}")
            raise UpstreamUnavailableError(
                "AutoTrader did not respond in time",
                details=f"{method} {path} timed out",
            )
        except httpx.RequestError as e:
            logger.error(f"Network error calling {method} {path}: {e}")
            raise UpstreamUnavailableError(
                "Unable to reach AutoTrader",
                details=f"{method} {path}: {e}",
            )

        if response.status_code >= 400:
            reason = getattr(response, "reason_phrase", "")
            error = classify_error_response(
                response.status_code,
                response.text,
                reason=reason if isinstance(reason, str) else "",
                endpoint=path,
            )
            logger.warning(
                f"AutoTrader {method} {path} failed with {response.status_code} "
                f"({error.error_type.value}): {error.message}"
            )
            raise error

        if response.status_code == 204 or not response.content:
            return {}

        try:
            data = response.json()
        except ValueError:
            logger.error(f"Non-JSON response from {method} {path}")
            raise UpstreamUnavailableError(
                "AutoTrader returned an unreadable response",
                details=f"{method} {path} returned a non-JSON body",
                http_status=502,
            )
        return data if isinstance(data, dict) else {"results": data}

    # Authentication

    async def authenticate(self, api_key: str, api_secret: str) -> Dict[str, Any]:
        """
        Exchange an API key/secret for an access token.

        Returns:
            Dict with access_token and expires_at (ISO) or expires_in (seconds)
        """
        try:
            data = await self.send(
                "POST",
                "/authenticate",
                body={"key": api_key, "secret": api_secret},
                timeout=self.auth_timeout,
            )
        except UpstreamRejectedError as e:
            # Any other 4xx from /authenticate means the key pair itself is bad
            raise InvalidCredentialsError(
                "AutoTrader rejected the API credentials",
                details=e.details,
                upstream_warnings=e.upstream_warnings,
            )

        if not data.get("access_token"):
            raise UpstreamUnavailableError(
                "AutoTrader authentication response did not include a token",
                http_status=502,
            )
        return data

    # Advertisers

    async def get_advertisers(self, token: str, advertiser_id: Optional[str] = None) -> Dict[str, Any]:
        params = {"autotraderAdvertAllowances": "true"}
        if advertiser_id:
            params["advertiserId"] = advertiser_id
        return await self.send("GET", "/advertisers", token=token, params=params)

    # Stock

    async def list_stock(
        self,
        token: str,
        advertiser_id: str,
        page: int = 1,
        page_size: int = 100,
    ) -> Dict[str, Any]:
        params = {
            "advertiserId": advertiser_id,
            "page": page,
            "pageSize": page_size,
        }
        return await self.send("GET", "/stock", token=token, params=params)

    async def get_stock_item(self, token: str, advertiser_id: str, stock_id: str) -> Dict[str, Any]:
        """
        Fetch a single stock record.

        Raises:
            StockNotFoundError: If the Marketplace has no record for stock_id
        """
        data = await self.send(
            "GET",
            "/stock",
            token=token,
            params={"advertiserId": advertiser_id, "stockId": stock_id},
        )
        results = data.get("results") or []
        if not results:
            raise StockNotFoundError(
                f"Stock {stock_id} not found on AutoTrader",
                details=f"advertiserId={advertiser_id}",
            )
        return results[0]

    async def update_stock(
        self,
        token: str,
        advertiser_id: str,
        stock_id: str,
        payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        return await self.send(
            "PATCH",
            f"/stock/{stock_id}",
            token=token,
            body=payload,
            params={"advertiserId": advertiser_id},
        )
