from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from pricing_api.core.deps import get_current_user, get_movement_service, get_tenant, require_paid_plan
from pricing_api.models.tenant import Tenant
from pricing_api.models.user import User
from pricing_api.services.movement_service import MovementService

# Every route is gated on authentication and a paid plan
router = APIRouter(dependencies=[Depends(require_paid_plan)])


class InboundCreate(BaseModel):
    product_id: int = Field(..., alias="productId")
    quantity: Decimal
    lot: Optional[str] = Field(None, max_length=100)
    unit_value: Optional[Decimal] = Field(None, alias="unitValue")
    occurred_at: Optional[str] = Field(None, alias="occurredAt")  # YYYY-MM-DD

    class Config:
        populate_by_name = True


class OutboundCreate(BaseModel):
    product_id: int = Field(..., alias="productId")
    quantity: Decimal

    class Config:
        populate_by_name = True


class MovementOut(BaseModel):
    id: int
    kind: str  # "entrada" or "saida"
    product_id: int
    quantity: Decimal
    lot: Optional[str] = None
    unit_value: Optional[Decimal] = None
    occurred_at: Optional[date] = None
    recorded_by: Optional[int] = None
    recorded_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StockBalanceOut(BaseModel):
    product_id: int
    stock: Decimal
    total_cost: Optional[Decimal]
    inbound_total: Decimal
    outbound_total: Decimal
    ledger_net: Decimal

    class Config:
        from_attributes = True


@router.get("", response_model=List[MovementOut])
def list_movements(
    product_id: Optional[int] = Query(None),
    kind: Optional[str] = Query(None, description="entrada or saida"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    tenant: Tenant = Depends(get_tenant),
    service: MovementService = Depends(get_movement_service),
):
    """List entradas and saidas, newest first"""
    history = service.list_movements(
        product_id=product_id,
        kind=kind,
        tenant_id=tenant.id,
        skip=skip,
        limit=limit,
    )
    return list(history)


@router.get("/products/{product_id}/balance", response_model=StockBalanceOut)
def get_stock_balance(
    product_id: int,
    tenant: Tenant = Depends(get_tenant),
    service: MovementService = Depends(get_movement_service),
):
    """Current stock of a product next to its ledger totals"""
    return service.stock_balance(product_id, tenant_id=tenant.id)


@router.post("/inbound", response_model=MovementOut, status_code=status.HTTP_201_CREATED)
def create_inbound(
    data: InboundCreate,
    tenant: Tenant = Depends(get_tenant),
    current_user: User = Depends(get_current_user),
    service: MovementService = Depends(get_movement_service),
):
    """Register an entrada and add it to the product stock"""
    return service.record_inbound(
        data.product_id,
        data.quantity,
        lot=data.lot,
        unit_value=data.unit_value,
        occurred_at=data.occurred_at,
        recorded_by=current_user.id,
        tenant_id=tenant.id,
    )


@router.post("/outbound", response_model=MovementOut, status_code=status.HTTP_201_CREATED)
def create_outbound(
    data: OutboundCreate,
    tenant: Tenant = Depends(get_tenant),
    current_user: User = Depends(get_current_user),
    service: MovementService = Depends(get_movement_service),
):
    """Register a saida; fails with insufficient_stock when stock does not cover it"""
    return service.record_outbound(
        data.product_id,
        data.quantity,
        recorded_by=current_user.id,
        tenant_id=tenant.id,
    )


@router.delete("/inbound/{movement_id}")
def delete_inbound(
    movement_id: int,
    tenant: Tenant = Depends(get_tenant),
    service: MovementService = Depends(get_movement_service),
):
    """Delete an entrada and take its quantity back out of stock"""
    service.delete_inbound(movement_id, tenant_id=tenant.id)
    return {"ok": True}


@router.delete("/outbound/{movement_id}")
def delete_outbound(
    movement_id: int,
    tenant: Tenant = Depends(get_tenant),
    service: MovementService = Depends(get_movement_service),
):
    """Delete a saida and return its quantity to stock"""
    service.delete_outbound(movement_id, tenant_id=tenant.id)
    return {"ok": True}
