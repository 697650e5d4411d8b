from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, DateTime
from sqlalchemy.orm import relationship

from pricing_api.models.tenant import Base


# Quantities carry up to three fractional digits (kg, litres, units)
QUANTITY_PRECISION = 14
QUANTITY_SCALE = 3
COST_PRECISION = 12
COST_SCALE = 4


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    # Denormalized running balance of the stock ledger
    stock = Column(Numeric(QUANTITY_PRECISION, QUANTITY_SCALE), nullable=False, default=0)
    # Last known inbound valuation, overwritten by each inbound movement that carries one
    total_cost = Column(Numeric(COST_PRECISION, COST_SCALE), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    tenant = relationship("Tenant")
