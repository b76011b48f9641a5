"""
Payment Endpoints.
Card (gateway intent) and cash payments, read paths and admin overrides.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends

from app.auth import Principal
from app.api.deps import get_current_principal, get_payment_service, require_admin
from app.schemas.orders import OrderOut
from app.schemas.payments import (
    CashPaymentRequest,
    ConfirmIntentRequest,
    ConfirmIntentResponse,
    CreateIntentRequest,
    CreateIntentResponse,
    OrderPaymentsResponse,
    PaymentOrderResponse,
    PaymentOut,
    RefundRequest,
    UpdateStatusRequest,
)
from app.services.payment_service import PaymentService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/stripe/create-intent", response_model=CreateIntentResponse)
async def create_payment_intent(
    request: CreateIntentRequest,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
):
    """Create a gateway payment intent for an order."""
    payment, intent = await service.create_intent(
        order_id=request.order_id,
        amount=request.amount,
        currency=request.currency,
        requester=principal,
    )
    return CreateIntentResponse(
        client_secret=intent.client_secret,
        payment_intent_id=intent.id,
        amount=payment.amount,
        currency=payment.currency,
    )


@router.post("/stripe/confirm", response_model=ConfirmIntentResponse)
async def confirm_payment_intent(
    request: ConfirmIntentRequest,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
):
    """
    Confirm a payment after client-side authorization.

    The gateway is asked for the intent's real status; the response carries
    the resulting payment and order state.
    """
    payment, order = await service.confirm_intent(
        payment_intent_id=request.payment_intent_id,
        order_id=request.order_id,
        requester=principal,
    )
    return ConfirmIntentResponse(
        payment=PaymentOut.model_validate(payment),
        order=OrderOut.model_validate(order),
        payment_status=payment.status,
    )


@router.post("/cash", response_model=PaymentOrderResponse)
async def process_cash_payment(
    request: CashPaymentRequest,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
):
    """Record cash on delivery for an order."""
    payment, order = await service.confirm_cash(
        order_id=request.order_id,
        amount=request.amount,
        requester=principal,
    )
    return PaymentOrderResponse(
        payment=PaymentOut.model_validate(payment),
        order=OrderOut.model_validate(order),
    )


@router.get("/order/{order_id}", response_model=OrderPaymentsResponse)
async def get_order_payment(
    order_id: str,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
):
    """All payment attempts for an order (owner or admin)."""
    order, payments = await service.get_order_payments(order_id, principal)
    return OrderPaymentsResponse(
        order=OrderOut.model_validate(order),
        payments=[PaymentOut.model_validate(p) for p in payments],
    )


@router.get("/user/{user_id}", response_model=List[PaymentOut])
async def get_user_payments(
    user_id: str,
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
):
    return await service.get_user_payments(user_id, principal)


@router.get("", response_model=List[PaymentOut])
async def get_my_payments(
    principal: Principal = Depends(get_current_principal),
    service: PaymentService = Depends(get_payment_service),
):
    return await service.get_user_payments(principal.id, principal)


@router.get("/admin/all", response_model=List[PaymentOut])
async def get_all_payments(
    principal: Principal = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
):
    return await service.list_payments(principal)


@router.put("/{payment_id}/status", response_model=PaymentOrderResponse)
async def update_payment_status(
    payment_id: str,
    request: UpdateStatusRequest,
    principal: Principal = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
):
    """Manual reconciliation: move a payment forward (admin only)."""
    payment, order = await service.update_status(payment_id, request.status, principal)
    return PaymentOrderResponse(
        payment=PaymentOut.model_validate(payment),
        order=OrderOut.model_validate(order),
    )


@router.post("/{payment_id}/refund", response_model=PaymentOrderResponse)
async def refund_payment(
    payment_id: str,
    request: RefundRequest,
    principal: Principal = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
):
    """Refund a completed payment (admin only, idempotent)."""
    payment, order = await service.refund(
        payment_id,
        principal,
        amount=request.amount,
        reason=request.reason,
    )
    return PaymentOrderResponse(
        payment=PaymentOut.model_validate(payment),
        order=OrderOut.model_validate(order),
    )
