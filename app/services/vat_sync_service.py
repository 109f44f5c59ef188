# app/services/vat_sync_service.py
import logging
from typing import Dict

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import VatScheme
from app.models.inventory_details import InventoryDetails, SaleDetails

logger = logging.getLogger(__name__)


class VatSchemeSyncService:
    """Keeps the purchase/sale accounting VAT scheme in step with the advert VAT status"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def sync(self, dealer_id: str, stock_id: str, scheme: VatScheme) -> Dict[str, int]:
        """
        Write the VAT scheme onto the stock item's accounting records.

        Records that don't exist yet are left alone; they pick the scheme up
        when they are created. Flushes only, the caller commits.

        Returns:
            Rows updated per table
        """
        counts = {}
        for model in (InventoryDetails, SaleDetails):
            result = await self.db.execute(
                update(model)
                .where(model.dealer_id == dealer_id, model.stock_id == stock_id)
                .values(vat_scheme=scheme.value)
            )
            counts[model.__tablename__] = result.rowcount or 0

        await self.db.flush()
        logger.info(f"VAT scheme for stock {stock_id} set to {scheme.value}: {counts}")
        return counts
