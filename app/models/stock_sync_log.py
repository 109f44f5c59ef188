# app/models/stock_sync_log.py

from sqlalchemy import Column, Integer, String, Text, TIMESTAMP, ForeignKey

from ..database import Base
from app.core.enums import SyncStatus
from app.core.utils import utc_now


class StockSyncLog(Base):
    """Audit row for one full stock refresh of a dealer"""

    __tablename__ = "stock_sync_logs"

    id = Column(Integer, primary_key=True)
    dealer_id = Column(String(36), ForeignKey("dealers.id"), index=True, nullable=False)
    advertiser_id = Column(String, nullable=True)
    status = Column(String, default=SyncStatus.IN_PROGRESS.value, index=True, nullable=False)

    pages_fetched = Column(Integer, default=0, nullable=False)
    records_processed = Column(Integer, default=0, nullable=False)
    records_upserted = Column(Integer, default=0, nullable=False)
    records_marked_missing = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    started_at = Column(TIMESTAMP(timezone=False), default=utc_now, nullable=False)
    completed_at = Column(TIMESTAMP(timezone=False), nullable=True)
