from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Numeric, Date, DateTime, ForeignKey, CheckConstraint

from pricing_api.models.tenant import Base
from pricing_api.models.product import QUANTITY_PRECISION, QUANTITY_SCALE, COST_PRECISION, COST_SCALE


ENTRADA = "entrada"
SAIDA = "saida"
MOVEMENT_KINDS = (ENTRADA, SAIDA)


class StockMovement(Base):
    __tablename__ = "stock_movements"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        CheckConstraint("kind IN ('entrada', 'saida')", name="ck_stock_movements_kind"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    # No FK cascade: the ledger survives product deletion as dangling history
    product_id = Column(Integer, nullable=False, index=True)
    recorded_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # "entrada" or "saida"
    kind = Column(String(20), nullable=False, index=True)

    # Always positive; the kind gives the sign
    quantity = Column(Numeric(QUANTITY_PRECISION, QUANTITY_SCALE), nullable=False)

    # Inbound only
    lot = Column(String(100), nullable=True)
    unit_value = Column(Numeric(COST_PRECISION, COST_SCALE), nullable=True)

    # Calendar day the movement happened
    occurred_at = Column(Date, nullable=True, index=True)
    recorded_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
