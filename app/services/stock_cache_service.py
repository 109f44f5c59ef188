# app/services/stock_cache_service.py
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import StockNotFoundError, ValidationError
from app.core.utils import utc_now
from app.models.stock_cache import StockCache
from app.schemas.stock import StockRecordRead

logger = logging.getLogger(__name__)

# Top-level fields upsert() may write
WRITABLE_FIELDS = {
    "advertiser_id",
    "vehicle_data",
    "adverts_data",
    "metadata_raw",
    "advertiser_data",
    "features_data",
    "registration",
    "make",
    "model",
    "lifecycle_state",
    "forecourt_price_gbp",
    "total_price_gbp",
    "last_fetched_at",
    "missing_upstream",
}


class StockCacheService:
    """
    Durable cache of Marketplace stock records, one row per (dealer, stock id).

    Records are never evicted. Freshness is tracked through last_fetched_at:
    an entry older than stale_after_hours is still served, but flagged stale.
    Writes go through upsert(), which overwrites only the top-level fields it
    is given; nested JSON merging happens in app.services.merge_engine first.

    The service flushes but does not commit; the caller owns the transaction.
    """

    def __init__(self, db: AsyncSession, stale_after_hours: int = 168, clock=utc_now):
        self.db = db
        self.stale_after = timedelta(hours=stale_after_hours)
        self._clock = clock

    async def _get_row(self, dealer_id: str, stock_id: str) -> Optional[StockCache]:
        result = await self.db.execute(
            select(StockCache).where(
                StockCache.dealer_id == dealer_id,
                StockCache.stock_id == stock_id,
            )
        )
        return result.scalars().first()

    def annotate(self, row: StockCache) -> StockRecordRead:
        """Read model with cache age (hours) and the staleness flag"""
        record = StockRecordRead.model_validate(row)
        if row.last_fetched_at is None:
            record.cache_age_hours = None
            record.is_stale = True
        else:
            age = self._clock() - row.last_fetched_at
            record.cache_age_hours = round(age.total_seconds() / 3600, 2)
            record.is_stale = age > self.stale_after
        return record

    async def get(self, dealer_id: str, stock_id: str) -> StockRecordRead:
        """
        Get a cached stock record.

        Raises:
            StockNotFoundError: If the record has never been cached
        """
        row = await self._get_row(dealer_id, stock_id)
        if row is None:
            raise StockNotFoundError(
                f"Stock {stock_id} is not in the cache",
                details=f"dealer {dealer_id}",
            )
        return self.annotate(row)

    async def get_row(self, dealer_id: str, stock_id: str) -> Optional[StockCache]:
        return await self._get_row(dealer_id, stock_id)

    async def upsert(self, dealer_id: str, stock_id: str, fields: Dict[str, Any]) -> StockCache:
        """
        Write the given top-level fields, creating the row if needed.

        Args:
            dealer_id: Owning dealer
            stock_id: Marketplace stock id
            fields: Column name -> value. Only these columns are touched.

        Raises:
            ValidationError: If fields names a column that can't be written
        """
        unknown = set(fields) - WRITABLE_FIELDS
        if unknown:
            raise ValidationError(
                "Unknown stock cache fields",
                details=", ".join(sorted(unknown)),
            )

        row = await self._get_row(dealer_id, stock_id)
        if row is None:
            row = StockCache(dealer_id=dealer_id, stock_id=stock_id, missing_upstream=False)
            self.db.add(row)
            logger.debug(f"Creating cache entry for stock {stock_id} (dealer {dealer_id})")

        for name, value in fields.items():
            setattr(row, name, value)

        await self.db.flush()
        return row

    async def mark_missing_upstream(self, dealer_id: str, present_stock_ids: Iterable[str]) -> int:
        """Flag every cached record of a dealer that the Marketplace no longer returns"""
        present = list(present_stock_ids)
        stmt = (
            update(StockCache)
            .where(StockCache.dealer_id == dealer_id, StockCache.missing_upstream.is_(False))
            .values(missing_upstream=True)
        )
        if present:
            stmt = stmt.where(StockCache.stock_id.notin_(present))
        result = await self.db.execute(stmt)
        count = result.rowcount or 0
        if count:
            logger.info(f"Marked {count} cached records missing upstream for dealer {dealer_id}")
        return count

    async def list_for_dealer(self, dealer_id: str, include_missing: bool = False) -> List[StockRecordRead]:
        query = select(StockCache).where(StockCache.dealer_id == dealer_id)
        if not include_missing:
            query = query.where(StockCache.missing_upstream.is_(False))
        result = await self.db.execute(query.order_by(StockCache.stock_id))
        return [self.annotate(row) for row in result.scalars().all()]

    async def delete(self, dealer_id: str, stock_id: str) -> bool:
        """Remove one record. Only ever called on an explicit dealer action."""
        result = await self.db.execute(
            delete(StockCache).where(
                StockCache.dealer_id == dealer_id,
                StockCache.stock_id == stock_id,
            )
        )
        return (result.rowcount or 0) > 0

    async def get_cache_stats(self, dealer_id: str) -> Dict[str, Any]:
        stale_before = self._clock() - self.stale_after
        result = await self.db.execute(
            select(
                func.count(StockCache.id),
                func.min(StockCache.last_fetched_at),
                func.max(StockCache.last_fetched_at),
            ).where(StockCache.dealer_id == dealer_id)
        )
        total, oldest, newest = result.one()

        stale = await self.db.scalar(
            select(func.count(StockCache.id)).where(
                StockCache.dealer_id == dealer_id,
                (StockCache.last_fetched_at.is_(None)) | (StockCache.last_fetched_at < stale_before),
            )
        )
        missing = await self.db.scalar(
            select(func.count(StockCache.id)).where(
                StockCache.dealer_id == dealer_id,
                StockCache.missing_upstream.is_(True),
            )
        )
        return {
            "dealer_id": dealer_id,
            "total_records": total or 0,
            "stale_records": stale or 0,
            "missing_upstream_records": missing or 0,
            "oldest_fetch": oldest,
            "newest_fetch": newest,
            "stale_after_hours": self.stale_after.total_seconds() / 3600,
        }

    async def clear_stale(self, dealer_id: str, older_than_hours: int) -> int:
        """
        Delete records that have dropped off the Marketplace and not been
        refetched for older_than_hours. Records still listed upstream are kept.
        """
        cutoff: datetime = self._clock() - timedelta(hours=older_than_hours)
        result = await self.db.execute(
            delete(StockCache).where(
                StockCache.dealer_id == dealer_id,
                StockCache.missing_upstream.is_(True),
                (StockCache.last_fetched_at.is_(None)) | (StockCache.last_fetched_at < cutoff),
            )
        )
        count = result.rowcount or 0
        logger.info(f"Cleared {count} stale cache records for dealer {dealer_id} (older than {older_than_hours}h)")
        return count
