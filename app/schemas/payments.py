import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import Field

from app.fsm.states import PaymentStatus
from app.schemas.common import CamelModel, Money
from app.schemas.orders import OrderOut


class CreateIntentRequest(CamelModel):
    order_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class CreateIntentResponse(CamelModel):
    client_secret: Optional[str] = None
    payment_intent_id: str
    amount: Money
    currency: str


class ConfirmIntentRequest(CamelModel):
    payment_intent_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)


class CashPaymentRequest(CamelModel):
    order_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)


class UpdateStatusRequest(CamelModel):
    status: PaymentStatus


class RefundRequest(CamelModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=200)


class CardDetailsOut(CamelModel):
    last4: str
    brand: Optional[str] = None
    expiry: Optional[str] = None


class PaymentOut(CamelModel):
    id: uuid.UUID
    order_id: uuid.UUID
    user_id: str
    amount: Money
    currency: str
    method: str
    gateway: str
    transaction_id: Optional[str] = None
    status: str
    card_details: Optional[CardDetailsOut] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime


class ConfirmIntentResponse(CamelModel):
    payment: PaymentOut
    order: OrderOut
    payment_status: str


class PaymentOrderResponse(CamelModel):
    payment: PaymentOut
    order: OrderOut


class OrderPaymentsResponse(CamelModel):
    order: OrderOut
    payments: List[PaymentOut]


class WebhookAck(CamelModel):
    received: bool = True
    outcome: str
