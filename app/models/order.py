"""Order model - checkout record with a denormalized payment summary."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import String, DateTime, Numeric, Boolean, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.fsm.states import OrderStatus, PaymentMethod


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(Base):
    """
    Order placed at checkout.

    Prices are fixed at creation. The payment fields (`payment_status`,
    `is_paid`, `paid_at`, `payment_result`, `payment_timestamps`) are a
    projection of the Payment referenced by `current_payment_id` and are only
    written by the payment lifecycle.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Buyer (principal id from the auth service)
    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )

    # [{product, qty, price, size}]
    order_items: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )

    shipping_address: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
    )

    items_price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )

    shipping_price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        default=Decimal("0"),
        nullable=False,
    )

    total_price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )

    payment_method: Mapped[str] = mapped_column(
        String(20),
        default=PaymentMethod.CARD.value,
        nullable=False,
    )

    # Mirrors Payment.status of the current attempt (NULL before any attempt)
    payment_status: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
    )

    is_paid: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Fulfillment status
    status: Mapped[str] = mapped_column(
        String(20),
        default=OrderStatus.PENDING.value,
        nullable=False,
    )

    # {id, status, update_time} - display only
    payment_result: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
    )

    # {initiated, completed, failed, canceled} ISO timestamps
    payment_timestamps: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )

    current_payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )

    is_delivered: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Order {self.id} {self.status} paid={self.is_paid}>"

    def is_owned_by(self, user_id: str) -> bool:
        return str(self.user_id) == str(user_id)

    def stamp_payment_timestamp(self, key: str, when: datetime) -> None:
        """Record a payment milestone once; later stamps never overwrite it."""
        stamps = dict(self.payment_timestamps or {})
        if stamps.get(key):
            return
        stamps[key] = when.isoformat()
        # Reassign so the JSON column is flagged dirty
        self.payment_timestamps = stamps
