# app/models/inventory_details.py

from sqlalchemy import Column, Integer, Numeric, String, TIMESTAMP, UniqueConstraint, ForeignKey, Date

from ..database import Base
from app.core.enums import VatScheme
from app.core.utils import utc_now


class InventoryDetails(Base):
    """Purchase-accounting record for a stock item"""

    __tablename__ = "inventory_details"
    __table_args__ = (
        UniqueConstraint("dealer_id", "stock_id", name="uq_inventory_details_dealer_stock"),
    )

    id = Column(Integer, primary_key=True)
    dealer_id = Column(String(36), ForeignKey("dealers.id"), index=True, nullable=False)
    stock_id = Column(String, index=True, nullable=False)
    registration = Column(String, nullable=True)
    date_of_purchase = Column(Date, nullable=True)
    cost_of_purchase = Column(Numeric(12, 2), nullable=True)
    purchase_from = Column(String, nullable=True)
    vat_scheme = Column(String, default=VatScheme.NO_VAT.value, nullable=True)

    created_at = Column(TIMESTAMP(timezone=False), default=utc_now, nullable=False)
    updated_at = Column(TIMESTAMP(timezone=False), default=utc_now, onupdate=utc_now, nullable=False)


class SaleDetails(Base):
    """Sale-side accounting record for a stock item"""

    __tablename__ = "sale_details"
    __table_args__ = (
        UniqueConstraint("dealer_id", "stock_id", name="uq_sale_details_dealer_stock"),
    )

    id = Column(Integer, primary_key=True)
    dealer_id = Column(String(36), ForeignKey("dealers.id"), index=True, nullable=False)
    stock_id = Column(String, index=True, nullable=False)
    registration = Column(String, nullable=True)
    sale_date = Column(Date, nullable=True)
    sale_price = Column(Numeric(12, 2), nullable=True)
    customer_name = Column(String, nullable=True)
    vat_scheme = Column(String, nullable=True)

    created_at = Column(TIMESTAMP(timezone=False), default=utc_now, nullable=False)
    updated_at = Column(TIMESTAMP(timezone=False), default=utc_now, onupdate=utc_now, nullable=False)
