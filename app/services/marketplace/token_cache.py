"""
In-memory Marketplace access tokens, one per effective identity.

Tokens live in memory only and are never persisted. A refresh for a given
identity is single-flight: concurrent callers await the same authentication
call instead of each issuing their own.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from app.core.utils import parse_datetime, utc_now
from app.schemas.identity import MarketplaceCredentials
from app.services.marketplace.client import MarketplaceClient

logger = logging.getLogger(__name__)

CredentialsLoader = Callable[[str], Awaitable[MarketplaceCredentials]]


@dataclass(frozen=True)
class CachedToken:
    identity_key: str
    access_token: str = field(repr=False)
    expires_at: datetime
    store_info: Dict[str, Any] = field(default_factory=dict)


class TokenCache:
    """
    Caches bearer tokens keyed by effective email.

    A token is reused until it is within refresh_margin_seconds of expiry.
    Entries are replaced on refresh, never mutated.
    """

    def __init__(
        self,
        client: MarketplaceClient,
        credentials_loader: CredentialsLoader,
        refresh_margin_seconds: int = 60,
        default_expires_in: int = 900,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.client = client
        self.credentials_loader = credentials_loader
        self.refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self.default_expires_in = default_expires_in
        self._clock = clock
        self._tokens: Dict[str, CachedToken] = {}
        self._inflight: Dict[str, asyncio.Task] = {}

    @staticmethod
    def _key(email: str) -> str:
        return (email or "").strip().lower()

    def _is_fresh(self, token: CachedToken) -> bool:
        return self._clock() < token.expires_at - self.refresh_margin

    def peek(self, email: str) -> Optional[CachedToken]:
        """Return the cached token if still fresh, without refreshing"""
        token = self._tokens.get(self._key(email))
        return token if token is not None and self._is_fresh(token) else None

    async def get_token(self, email: str) -> CachedToken:
        """
        Get a valid token for an effective email, authenticating if needed.

        Raises:
            AuthenticationFailedError: The dealer has no API keys configured
            InvalidCredentialsError: The Marketplace rejected the keys
            UpstreamUnavailableError: Network failure, timeout or 5xx
        """
        key = self._key(email)
        cached = self._tokens.get(key)
        if cached is not None and self._is_fresh(cached):
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._refresh(key))
            self._inflight[key] = task
            task.add_done_callback(lambda done, k=key: self._on_refresh_done(k, done))
        else:
            logger.debug(f"Joining in-flight token refresh for {key}")

        # Shielded so one cancelled caller doesn't cancel the refresh for the others
        return await asyncio.shield(task)

    def _on_refresh_done(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Token refresh failed for {key}: {task.exception()}")

    async def _refresh(self, key: str) -> CachedToken:
        credentials = await self.credentials_loader(key)
        logger.info(f"Authenticating with AutoTrader for {key} ({credentials.source} credentials)")
        data = await self.client.authenticate(credentials.api_key, credentials.api_secret)

        token = CachedToken(
            identity_key=key,
            access_token=data["access_token"],
            expires_at=self._expiry_from(data),
            store_info=dict(credentials.store_info),
        )
        self._tokens[key] = token
        logger.info(f"Cached AutoTrader token for {key} (expires: {token.expires_at})")
        return token

    def _expiry_from(self, data: Dict[str, Any]) -> datetime:
        expires_at = parse_datetime(data.get("expires_at"))
        if expires_at is not None:
            return expires_at
        try:
            expires_in = int(data.get("expires_in") or self.default_expires_in)
        except (TypeError, ValueError):
            expires_in = self.default_expires_in
        return self._clock() + timedelta(seconds=expires_in)

    def invalidate(self, email: str) -> bool:
        """Drop the cached token for an identity, e.g. after a 401"""
        removed = self._tokens.pop(self._key(email), None) is not None
        if removed:
            logger.info(f"Invalidated AutoTrader token for {self._key(email)}")
        return removed

    def clear(self) -> None:
        self._tokens.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            "cached_identities": len(self._tokens),
            "fresh_tokens": sum(1 for t in self._tokens.values() if self._is_fresh(t)),
            "refreshes_in_flight": len(self._inflight),
        }
