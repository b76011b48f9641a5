"""
Order Endpoints.
Checkout and order reads, annotated by the payment reconciliation validator.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import Principal
from app.api.deps import get_current_principal, require_admin
from app.database import get_db
from app.models.order import Order
from app.schemas.orders import CreateOrderRequest, OrderOut, PaymentValidationOut
from app.services.order_service import OrderService
from app.services.reconciliation import PaymentValidation, ReconciliationService

router = APIRouter()
logger = logging.getLogger(__name__)


def _order_out(order: Order, validation: Optional[PaymentValidation] = None) -> OrderOut:
    out = OrderOut.model_validate(order)
    if validation is not None:
        out.payment_validation = PaymentValidationOut(**validation.to_dict())
    return out


@router.post("", response_model=OrderOut, status_code=status.HTTP_201_CREATED)
async def create_order(
    request: CreateOrderRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    order = await OrderService(db).create_order(request, principal)
    return _order_out(order)


@router.get("/mine", response_model=List[OrderOut])
async def get_my_orders(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """The caller's orders. Orders whose payment does not reconcile are left out."""
    annotated = await ReconciliationService(db).orders_for_buyer(principal.id)
    return [_order_out(order) for order, _, _ in annotated]


@router.get("", response_model=List[OrderOut])
async def get_all_orders(
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Every order with its payment validation attached."""
    annotated = await ReconciliationService(db).orders_for_admin()
    return [_order_out(order, validation) for order, _, validation in annotated]


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(
    order_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    order = await OrderService(db).get_order(order_id, principal)
    [(_, _, validation)] = await ReconciliationService(db).annotate([order])
    return _order_out(order, validation)
