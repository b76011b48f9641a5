"""Payment model - one row per payment attempt against an order."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import String, DateTime, ForeignKey, Numeric, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.fsm.states import PaymentStatus
from app.models.order import utcnow


class Payment(Base):
    """
    Authoritative record of a payment attempt.

    transaction_id is unique but nullable, so cash rows without an id never
    collide (sparse uniqueness). Rows are never deleted.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # Owner of the order at the time the attempt was made
    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        default="inr",
        nullable=False,
    )

    # card | cash
    method: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    # stripe | mock | cash
    gateway: Mapped[str] = mapped_column(
        String(20),
        default="mock",
        nullable=False,
    )

    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )

    status: Mapped[str] = mapped_column(
        String(30),
        default=PaymentStatus.PENDING.value,
        nullable=False,
    )

    # Card summary only, never the full number or CVV
    card_last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    card_brand: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    card_expiry: Mapped[Optional[str]] = mapped_column(String(7), nullable=True)

    # Append-only list of raw gateway snapshots
    gateway_response: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )

    failure_reason: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )

    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    refunded_at: Mapped[Optional[datetime]] = mapped_column(
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
        return f"<Payment {self.id} {self.method} {self.status}>"

    @property
    def payment_status(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    @property
    def card_details(self) -> Optional[Dict[str, Any]]:
        if not self.card_last4:
            return None
        return {
            "last4": self.card_last4,
            "brand": self.card_brand,
            "expiry": self.card_expiry,
        }

    def record_gateway_response(self, snapshot: Dict[str, Any]) -> None:
        """Append a gateway snapshot to the audit trail."""
        entries = list(self.gateway_response or [])
        entries.append(snapshot)
        self.gateway_response = entries
