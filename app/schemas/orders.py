import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, Field

from app.fsm.states import PaymentMethod
from app.schemas.common import CamelModel, Money


class OrderItemIn(CamelModel):
    product: str = Field(min_length=1, validation_alias=AliasChoices("product", "productId"))
    qty: int = Field(gt=0, validation_alias=AliasChoices("qty", "quantity"))
    price: Decimal = Field(gt=0)
    size: Optional[str] = None


class ShippingAddressIn(CamelModel):
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    postal_code: Optional[str] = None
    country: Optional[str] = None


class CreateOrderRequest(CamelModel):
    order_items: List[OrderItemIn] = Field(
        min_length=1,
        validation_alias=AliasChoices("orderItems", "cartItems"),
    )
    shipping_address: ShippingAddressIn
    payment_method: PaymentMethod = PaymentMethod.CARD
    items_price: Optional[Decimal] = Field(default=None, gt=0)
    total_price: Decimal = Field(gt=0)


class PaymentValidationOut(CamelModel):
    valid: bool
    reason_code: str
    details: str = ""


class OrderOut(CamelModel):
    id: uuid.UUID
    user_id: str
    order_items: List[Dict[str, Any]]
    shipping_address: Optional[Dict[str, Any]] = None
    items_price: Money
    shipping_price: Money
    total_price: Money
    payment_method: str
    payment_status: Optional[str] = None
    is_paid: bool
    paid_at: Optional[datetime] = None
    status: str
    payment_result: Optional[Dict[str, Any]] = None
    payment_timestamps: Dict[str, Any] = {}
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    created_at: datetime
    payment_validation: Optional[PaymentValidationOut] = None
