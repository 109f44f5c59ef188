# app/services/stock_sync_service.py
"""
Inbound operations of the stock sync layer.

Every public coroutine returns an OperationResult. Typed MarketplaceSyncError
failures become error results at this boundary. Best-effort steps that run
after a successful Marketplace write (cache update, VAT scheme sync) never
fail the operation; their problems are reported as warnings.
"""

import logging
import math
from typing import Any, Awaitable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.enums import AdvertStatus, RetailChannel, SyncStatus, WriteState
from app.core.exceptions import (
    ConfigNotFoundError,
    InvalidCredentialsError,
    MarketplaceSyncError,
    StockNotFoundError,
    UpstreamRejectedError,
    UpstreamUnavailableError,
    ValidationError,
)
from app.core.utils import utc_now
from app.models.stock_cache import StockCache
from app.models.stock_sync_log import StockSyncLog
from app.schemas.identity import EffectiveIdentity
from app.schemas.results import OperationResult
from app.schemas.stock import ListingRowUpdate, StockUpdateRequest
from app.services.identity_service import CredentialResolver
from app.services.marketplace.advertisers import calculate_listing_allowance, resolve_advertiser_id
from app.services.marketplace.client import MarketplaceClient
from app.services.marketplace.token_cache import CachedToken, TokenCache
from app.services.merge_engine import (
    apply_response,
    build_cache_fields,
    diff_changeset,
    effective_vat_status,
    normalize_vat_scheme,
    subdocuments,
)
from app.services.request_cache import RequestScopedCache
from app.services.stock_cache_service import StockCacheService
from app.services.vat_sync_service import VatSchemeSyncService

logger = logging.getLogger(__name__)

LISTING_ROW_CHANNELS = {
    "autotrader": RetailChannel.AUTOTRADER,
    "advertiser": RetailChannel.ADVERTISER,
    "locator": RetailChannel.LOCATOR,
    "profile": RetailChannel.PROFILE,
}


class StockSyncService:
    """
    Facade over identity resolution, tokens, the Marketplace client, the
    merge engine and the stock cache.

    One instance per request: it holds the request's database session, while
    the token cache, client and limits cache are the process-wide instances.
    """

    def __init__(
        self,
        db: AsyncSession,
        token_cache: TokenCache,
        client: MarketplaceClient,
        limits_cache: RequestScopedCache,
        settings: Settings,
    ):
        self.db = db
        self.token_cache = token_cache
        self.client = client
        self.limits_cache = limits_cache
        self.settings = settings
        self.resolver = CredentialResolver(db)
        self.stock_cache = StockCacheService(db, stale_after_hours=settings.STOCK_STALE_AFTER_HOURS)
        self.vat_sync = VatSchemeSyncService(db)

    async def _run(self, operation: str, work: Awaitable[OperationResult]) -> OperationResult:
        try:
            return await work
        except MarketplaceSyncError as e:
            logger.warning(f"{operation} failed ({e.error_type.value}): {e.message}")
            return OperationResult.failure(e)

    # Shared steps

    @staticmethod
    def _require_dealer(identity: EffectiveIdentity) -> str:
        if not identity.dealer_id:
            raise ConfigNotFoundError(
                "Dealer record not found",
                details=f"No dealer record for {identity.effective_email}",
            )
        return identity.dealer_id

    async def _token(self, identity: EffectiveIdentity) -> CachedToken:
        return await self.token_cache.get_token(identity.effective_email)

    async def _upstream(self, identity: EffectiveIdentity, call: Awaitable[Dict[str, Any]]) -> Dict[str, Any]:
        """Await a Marketplace data call, dropping the cached token if it was rejected"""
        try:
            return await call
        except InvalidCredentialsError:
            self.token_cache.invalidate(identity.effective_email)
            raise

    async def _advertiser_id(self, identity: EffectiveIdentity) -> str:
        store_config = await self.resolver.get_store_config(identity)
        return resolve_advertiser_id(store_config).advertiser_id

    async def _fetch_and_cache(
        self,
        identity: EffectiveIdentity,
        stock_id: str,
        advertiser_id: Optional[str] = None,
    ) -> StockCache:
        dealer_id = self._require_dealer(identity)
        token = await self._token(identity)
        advertiser_id = advertiser_id or await self._advertiser_id(identity)

        item = await self._upstream(
            identity,
            self.client.get_stock_item(token.access_token, advertiser_id, stock_id),
        )
        fields = build_cache_fields(item)
        fields.pop("stock_id")
        fields.setdefault("advertiser_id", advertiser_id)
        fields["last_fetched_at"] = utc_now()
        fields["missing_upstream"] = False

        row = await self.stock_cache.upsert(dealer_id, stock_id, fields)
        await self.db.commit()
        logger.info(f"Fetched stock {stock_id} from AutoTrader for dealer {dealer_id}")
        return row

    # Identity and tokens

    async def resolve_identity(self, user_id: str, email: Optional[str] = None) -> OperationResult:
        async def work():
            identity = await self.resolver.resolve(user_id, email)
            return OperationResult.ok(identity.model_dump())
        return await self._run("resolve_identity", work())

    async def get_token(self, email: str) -> OperationResult:
        async def work():
            token = await self.token_cache.get_token(email)
            return OperationResult.ok({
                "access_token": token.access_token,
                "expires_at": token.expires_at.isoformat(),
                "store_info": token.store_info,
            })
        return await self._run("get_token", work())

    async def test_authentication(self, user_id: str, email: Optional[str] = None) -> OperationResult:
        """Resolve identity and authenticate, reporting remediation suggestions on failure"""
        async def work():
            identity = await self.resolver.resolve(user_id, email)
            token = await self._token(identity)
            return OperationResult.ok({
                "authenticated": True,
                "effective_email": identity.effective_email,
                "is_delegated": identity.is_delegated,
                "store_name": token.store_info.get("store_name"),
                "expires_at": token.expires_at.isoformat(),
            })
        return await self._run("test_authentication", work())

    # Reads

    async def get_stock(self, identity: EffectiveIdentity, stock_id: str, force_refresh: bool = False) -> OperationResult:
        """
        Serve a stock record from the cache, refetching it when stale or missing.

        If the Marketplace is unavailable and a cached copy exists, the cached
        copy is served with a warning.
        """
        async def work():
            dealer_id = self._require_dealer(identity)
            row = await self.stock_cache.get_row(dealer_id, stock_id)
            if row is not None and not force_refresh:
                record = self.stock_cache.annotate(row)
                if not record.is_stale:
                    return OperationResult.ok({"record": record.model_dump(mode="json"), "from_cache": True})

            try:
                row = await self._fetch_and_cache(identity, stock_id, row.advertiser_id if row is not None else None)
            except UpstreamUnavailableError as e:
                if row is None:
                    raise
                logger.warning(f"Serving cached stock {stock_id}: {e.message}")
                record = self.stock_cache.annotate(row)
                return OperationResult.ok(
                    {"record": record.model_dump(mode="json"), "from_cache": True},
                    warnings=[f"AutoTrader unavailable, showing cached data: {e.message}"],
                )

            record = self.stock_cache.annotate(row)
            return OperationResult.ok({"record": record.model_dump(mode="json"), "from_cache": False})
        return await self._run("get_stock", work())

    async def get_limits(self, identity: EffectiveIdentity) -> OperationResult:
        """Listing allowance for the dealer, cached per requesting user"""
        async def work():
            cache_key = f"limits_{identity.requesting_user_id}"
            cached = self.limits_cache.get(cache_key)
            if cached is not None:
                return OperationResult.ok({**cached, "from_cache": True, "cached_at": cached["last_updated"]})

            token = await self._token(identity)
            advertiser_id = await self._advertiser_id(identity)
            response = await self._upstream(
                identity,
                self.client.get_advertisers(token.access_token, advertiser_id),
            )
            limits = calculate_listing_allowance(response, advertiser_id)
            limits["last_updated"] = utc_now().isoformat()
            self.limits_cache.set(cache_key, limits)
            return OperationResult.ok({**limits, "from_cache": False})
        return await self._run("get_limits", work())

    # Writes

    async def apply_stock_update(
        self,
        identity: EffectiveIdentity,
        stock_id: str,
        changeset: Dict[str, Any],
    ) -> OperationResult:
        """
        Apply a caller's change-set to a stock record.

        Strictly sequential: authenticate, diff against the cache, send only the
        changed fields, reconcile the Marketplace response, persist. A rejected
        write is terminal; nothing is retried and the cache is left untouched.
        """
        return await self._run("apply_stock_update", self._apply_stock_update(identity, stock_id, changeset))

    async def _apply_stock_update(
        self,
        identity: EffectiveIdentity,
        stock_id: str,
        changeset: Dict[str, Any],
    ) -> OperationResult:
        try:
            request = StockUpdateRequest.model_validate(changeset)
        except PydanticValidationError as e:
            raise ValidationError("Invalid stock update", details=str(e))

        warnings: List[str] = []
        state = WriteState.PENDING_AUTH
        dealer_id = self._require_dealer(identity)

        token = await self._token(identity)
        state = WriteState.AUTHENTICATED

        row = await self.stock_cache.get_row(dealer_id, stock_id)
        if row is None:
            row = await self._fetch_and_cache(identity, stock_id, request.advertiser_id)
        original = subdocuments(row)
        vehicle_type = (original.get("vehicle") or {}).get("vehicleType")

        diff = diff_changeset(
            original,
            request.to_changeset(),
            vehicle_type=vehicle_type,
            supplied_price_minimum=self.settings.SUPPLIED_PRICE_MINIMUM_GBP,
        )
        state = WriteState.DIFFED
        warnings.extend(diff.warnings)

        if diff.is_empty:
            logger.info(f"No changes detected for stock {stock_id}")
            return OperationResult.ok(
                {
                    "stock_id": stock_id,
                    "state": state.value,
                    "message": "No changes detected",
                    "updated_sections": [],
                    "changed_fields": [],
                },
                warnings=warnings,
            )

        advertiser_id = request.advertiser_id or row.advertiser_id or await self._advertiser_id(identity)
        try:
            response = await self._upstream(
                identity,
                self.client.update_stock(token.access_token, advertiser_id, stock_id, diff.payload),
            )
        except UpstreamRejectedError:
            logger.warning(f"Stock {stock_id} update ended in {WriteState.UPSTREAM_REJECTED.value}")
            raise
        state = WriteState.SENT
        logger.info(f"Updated stock {stock_id} on AutoTrader: {diff.changed_fields}")

        reconciled = apply_response(original, diff.payload, response)
        state = WriteState.RECONCILED

        # Upstream has already changed: from here on failures are warnings
        record = None
        try:
            row = await self.stock_cache.upsert(dealer_id, stock_id, reconciled.record_fields)
            await self.db.commit()
            record = self.stock_cache.annotate(row).model_dump(mode="json")
            state = WriteState.CACHE_UPDATED
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Cache update failed for stock {stock_id} after successful write: {e}", exc_info=True)
            warnings.append("Stock cache update failed; the record will refresh on the next fetch")

        if diff.vat_status_changed:
            scheme = normalize_vat_scheme(effective_vat_status(diff.payload.get("adverts")))
            try:
                await self.vat_sync.sync(dealer_id, stock_id, scheme)
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                logger.error(f"VAT scheme sync failed for stock {stock_id}: {e}", exc_info=True)
                warnings.append(f"VAT scheme sync failed: {e}")

        return OperationResult.ok(
            {
                "stock_id": stock_id,
                "advertiser_id": advertiser_id,
                "state": state.value,
                "updated_sections": list(diff.payload.keys()),
                "changed_fields": diff.changed_fields,
                "sources": reconciled.sources,
                "record": record,
            },
            warnings=warnings,
        )

    async def update_listing_row(self, identity: EffectiveIdentity, row_update: ListingRowUpdate) -> OperationResult:
        """Turn a listings-grid edit into an adverts change-set and apply it"""
        adverts: Dict[str, Any] = {}
        if row_update.price is not None and row_update.price > 0:
            adverts["forecourtPrice"] = {"amountGBP": row_update.price}

        retail: Dict[str, Any] = {}
        for attribute, channel in LISTING_ROW_CHANNELS.items():
            flag = getattr(row_update, attribute)
            if flag is not None:
                status = AdvertStatus.PUBLISHED if flag else AdvertStatus.NOT_PUBLISHED
                retail[channel.value] = {"status": status.value}
        if retail:
            adverts["retailAdverts"] = retail

        if not adverts:
            return OperationResult.failure(ValidationError("No price or channel changes provided"))
        return await self.apply_stock_update(identity, row_update.stock_id, {"adverts": adverts})

    async def refresh_stock(self, identity: EffectiveIdentity) -> OperationResult:
        """
        Pull the dealer's full stock list and upsert every record.

        Pages are committed as they arrive. Records the Marketplace no longer
        returns are flagged missing_upstream (never deleted), and only after
        every page has been read.
        """
        return await self._run("refresh_stock", self._refresh_stock(identity))

    async def _refresh_stock(self, identity: EffectiveIdentity) -> OperationResult:
        dealer_id = self._require_dealer(identity)
        token = await self._token(identity)
        advertiser_id = await self._advertiser_id(identity)
        page_size = self.settings.STOCK_PAGE_SIZE

        sync_log = StockSyncLog(dealer_id=dealer_id, advertiser_id=advertiser_id, status=SyncStatus.IN_PROGRESS.value)
        self.db.add(sync_log)
        await self.db.commit()
        log_id = sync_log.id

        seen: List[str] = []
        skipped: List[str] = []
        pages = processed = 0
        page = 1
        total_pages = None
        read_all_pages = False
        try:
            while page <= self.settings.STOCK_MAX_PAGES:
                data = await self._upstream(
                    identity,
                    self.client.list_stock(token.access_token, advertiser_id, page=page, page_size=page_size),
                )
                pages += 1
                results = data.get("results") or []
                fetched_at = utc_now()
                for item in results:
                    processed += 1
                    try:
                        fields = build_cache_fields(item)
                    except ValidationError as e:
                        skipped.append(e.message)
                        continue
                    stock_id = fields.pop("stock_id")
                    fields.setdefault("advertiser_id", advertiser_id)
                    fields["last_fetched_at"] = fetched_at
                    fields["missing_upstream"] = False
                    await self.stock_cache.upsert(dealer_id, stock_id, fields)
                    seen.append(stock_id)
                await self.db.commit()

                total_pages = data.get("totalPages")
                if total_pages is None and data.get("totalResults") is not None:
                    total_pages = math.ceil(int(data["totalResults"]) / page_size)
                if not results or page >= (total_pages or 1):
                    read_all_pages = True
                    break
                page += 1

            # A truncated read cannot tell a delisted record from one on an unread page
            marked_missing = 0
            if read_all_pages:
                marked_missing = await self.stock_cache.mark_missing_upstream(dealer_id, seen)
        except MarketplaceSyncError as e:
            await self.db.rollback()
            await self._finish_sync_log(
                log_id,
                status=SyncStatus.ERROR,
                pages_fetched=pages,
                records_processed=processed,
                records_upserted=len(seen),
                error_message=e.message,
            )
            raise

        warnings = [f"Skipped record: {message}" for message in skipped]
        if not read_all_pages:
            truncated = (
                f"Stopped after {pages} of {total_pages or 'unknown'} pages (page limit "
                f"{self.settings.STOCK_MAX_PAGES}); no records were marked missing upstream"
            )
            logger.warning(f"Stock refresh for dealer {dealer_id}: {truncated}")
            warnings.append(truncated)

        status = SyncStatus.PARTIAL if warnings else SyncStatus.SUCCESS
        await self._finish_sync_log(
            log_id,
            status=status,
            pages_fetched=pages,
            records_processed=processed,
            records_upserted=len(seen),
            records_marked_missing=marked_missing,
            error_message="; ".join(warnings) or None,
        )
        logger.info(
            f"Stock refresh for dealer {dealer_id}: {len(seen)} upserted, "
            f"{marked_missing} marked missing, {len(skipped)} skipped over {pages} pages"
        )
        return OperationResult.ok(
            {
                "sync_log_id": log_id,
                "status": status.value,
                "advertiser_id": advertiser_id,
                "pages_fetched": pages,
                "records_processed": processed,
                "records_upserted": len(seen),
                "records_marked_missing": marked_missing,
                "complete": read_all_pages,
            },
            warnings=warnings,
        )

    async def _finish_sync_log(self, log_id: int, status: SyncStatus, **values) -> None:
        await self.db.execute(
            update(StockSyncLog)
            .where(StockSyncLog.id == log_id)
            .values(status=status.value, completed_at=utc_now(), **values)
        )
        await self.db.commit()

    # Cache maintenance

    async def get_cache_stats(self, identity: EffectiveIdentity) -> OperationResult:
        async def work():
            stats = await self.stock_cache.get_cache_stats(self._require_dealer(identity))
            return OperationResult.ok({
                **stats,
                "oldest_fetch": stats["oldest_fetch"].isoformat() if stats["oldest_fetch"] else None,
                "newest_fetch": stats["newest_fetch"].isoformat() if stats["newest_fetch"] else None,
                "token_cache": self.token_cache.stats(),
                "limits_cache": self.limits_cache.stats(),
            })
        return await self._run("get_cache_stats", work())

    async def clear_stale(self, identity: EffectiveIdentity, older_than_hours: int) -> OperationResult:
        async def work():
            if older_than_hours < 0:
                raise ValidationError("older_than_hours must not be negative")
            removed = await self.stock_cache.clear_stale(self._require_dealer(identity), older_than_hours)
            await self.db.commit()
            return OperationResult.ok({"removed": removed, "older_than_hours": older_than_hours})
        return await self._run("clear_stale", work())

    async def remove_cached_stock(self, identity: EffectiveIdentity, stock_id: str) -> OperationResult:
        """Drop one record from the local cache; AutoTrader is not touched"""
        async def work():
            dealer_id = self._require_dealer(identity)
            if not await self.stock_cache.delete(dealer_id, stock_id):
                raise StockNotFoundError(f"Stock {stock_id} is not cached", details=f"stock_id={stock_id}")
            await self.db.commit()
            logger.info(f"Removed stock {stock_id} from the cache for dealer {dealer_id}")
            return OperationResult.ok({"stock_id": stock_id, "removed": True})
        return await self._run("remove_cached_stock", work())
