# app/models/stock_cache.py

from sqlalchemy import (
    Boolean, Column, Integer, JSON, Numeric, String, TIMESTAMP, UniqueConstraint, ForeignKey
)
from sqlalchemy.dialects.postgresql import JSONB

from ..database import Base
from app.core.utils import utc_now

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class StockCache(Base):
    """
    One cached Marketplace stock record per (dealer, stock id).

    The JSON sub-documents are the Marketplace's own shapes. The flattened
    columns are derived from them by app.services.merge_engine and must not be
    written independently.
    """

    __tablename__ = "stock_cache"
    __table_args__ = (
        UniqueConstraint("dealer_id", "stock_id", name="uq_stock_cache_dealer_stock"),
    )

    id = Column(Integer, primary_key=True)
    dealer_id = Column(String(36), ForeignKey("dealers.id"), index=True, nullable=False)
    stock_id = Column(String, index=True, nullable=False)
    advertiser_id = Column(String, index=True, nullable=True)

    # Raw sub-documents
    vehicle_data = Column(JSONType, nullable=True)
    adverts_data = Column(JSONType, nullable=True)
    metadata_raw = Column(JSONType, nullable=True)
    advertiser_data = Column(JSONType, nullable=True)
    features_data = Column(JSONType, nullable=True)  # list of feature records

    # Flattened fields
    registration = Column(String, index=True, nullable=True)
    make = Column(String, index=True, nullable=True)
    model = Column(String, nullable=True)
    lifecycle_state = Column(String, index=True, nullable=True)
    forecourt_price_gbp = Column(Numeric(12, 2), nullable=True)
    total_price_gbp = Column(Numeric(12, 2), nullable=True)

    # Freshness tracking
    last_fetched_at = Column(TIMESTAMP(timezone=False), nullable=True)
    missing_upstream = Column(Boolean, default=False, nullable=False)

    created_at = Column(TIMESTAMP(timezone=False), default=utc_now, nullable=False)
    updated_at = Column(TIMESTAMP(timezone=False), default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self):
        return f"<StockCache(dealer_id={self.dealer_id}, stock_id='{self.stock_id}')>"
