"""
Payment state machine.

Rank-gated transitions for a Payment and the projection of the result onto
its Order. Pure in-memory mutation; callers own locking and commits.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from app.fsm.states import PaymentStatus, OrderStatus
from app.models.order import Order
from app.models.payment import Payment

logger = logging.getLogger(__name__)

# Fulfillment statuses that a completed payment may advance to PAID
_PAYABLE_ORDER_STATUSES = (OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value)


def can_transition(current: PaymentStatus, new: PaymentStatus) -> bool:
    """
    Rank gate.

    A status is accepted when it equals the stored one (idempotent replay) or
    ranks strictly higher. Refunds additionally require a completed payment.
    """
    if new == current:
        return True
    if new == PaymentStatus.REFUNDED:
        return current == PaymentStatus.COMPLETED
    return new.rank > current.rank


@dataclass
class TransitionResult:
    """What happened when a status was offered to a payment."""

    previous: PaymentStatus
    requested: PaymentStatus
    applied: bool
    projected: bool = False

    @property
    def is_noop(self) -> bool:
        return self.previous == self.requested

    @property
    def is_stale(self) -> bool:
        return not self.applied and not self.is_noop

    @property
    def current(self) -> PaymentStatus:
        return self.requested if self.applied else self.previous


class PaymentStateMachine:
    """Applies status changes to a (Payment, Order) pair as one unit."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime.now(timezone.utc)

    def apply(
        self,
        payment: Payment,
        order: Order,
        new_status: PaymentStatus,
        project: bool = True,
    ) -> TransitionResult:
        """
        Offer `new_status` to `payment`.

        When applied and `project` is set, the order's payment summary is
        updated in the same call so the two never diverge.
        """
        previous = PaymentStatus(payment.status)
        result = TransitionResult(previous=previous, requested=new_status, applied=False)

        if new_status == previous:
            return result

        if not can_transition(previous, new_status):
            logger.info(
                f"Discarding stale transition {previous.value} -> {new_status.value} "
                f"for payment {payment.id}",
                extra={
                    "payment_id": payment.id,
                    "from_status": previous.value,
                    "to_status": new_status.value,
                },
            )
            return result

        payment.status = new_status.value
        if new_status in (PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELED):
            payment.processed_at = self.now
        elif new_status == PaymentStatus.REFUNDED:
            payment.refunded_at = self.now
        result.applied = True

        if project:
            self.project(payment, order, new_status)
            result.projected = True

        logger.info(
            f"Payment {payment.id}: {previous.value} -> {new_status.value}",
            extra={
                "payment_id": payment.id,
                "order_id": order.id,
                "from_status": previous.value,
                "to_status": new_status.value,
            },
        )
        return result

    def project(self, payment: Payment, order: Order, status: PaymentStatus) -> None:
        """Copy the payment's status onto the order's denormalized fields."""
        order.current_payment_id = payment.id
        order.payment_method = payment.method
        order.payment_status = status.value
        order.payment_result = {
            "id": payment.transaction_id,
            "status": status.value,
            "update_time": self.now.isoformat(),
        }

        if status == PaymentStatus.PENDING:
            order.stamp_payment_timestamp("initiated", self.now)
        elif status == PaymentStatus.COMPLETED:
            order.is_paid = True
            order.paid_at = self.now
            if order.status in _PAYABLE_ORDER_STATUSES:
                order.status = OrderStatus.PAID.value
            order.stamp_payment_timestamp("completed", self.now)
        elif status == PaymentStatus.FAILED:
            order.stamp_payment_timestamp("failed", self.now)
        elif status == PaymentStatus.CANCELED:
            order.stamp_payment_timestamp("canceled", self.now)
        elif status == PaymentStatus.REFUNDED:
            order.is_paid = False
