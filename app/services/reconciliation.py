"""
Reconciliation - detect divergence between an Order's payment summary and
its Payment record.

`validate_order_payment` is a pure check over one pair. The service applies
it to order lists: buyers only see valid orders, admins see everything with
the result attached. Nothing here writes; fixes go through the admin status
override.
"""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.fsm.states import PaymentGateway, PaymentMethod, PaymentStatus, ReasonCode
from app.models.order import Order
from app.models.payment import Payment

logger = logging.getLogger(__name__)

# (order.payment_status, payment.status) pairs tolerated while an order catches up
ALLOWED_TRANSITIONAL_PAIRS = {
    (PaymentStatus.PENDING.value, PaymentStatus.COMPLETED.value),
    (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value),
}

VALID_METHODS = {PaymentMethod.CARD.value, PaymentMethod.CASH.value}


@dataclass
class PaymentValidation:
    valid: bool
    reason_code: ReasonCode
    details: str = ""

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "reasonCode": self.reason_code.value,
            "details": self.details,
        }


def _valid() -> PaymentValidation:
    return PaymentValidation(valid=True, reason_code=ReasonCode.VALID, details=ReasonCode.VALID.description)


def _invalid(code: ReasonCode, details: Optional[str] = None) -> PaymentValidation:
    return PaymentValidation(valid=False, reason_code=code, details=details or code.description)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _gateway_matches_method(method: str, gateway: str) -> bool:
    if method == PaymentMethod.CASH.value:
        return gateway == PaymentGateway.CASH.value
    return gateway != PaymentGateway.CASH.value


def validate_order_payment(
    order: Order,
    payment: Optional[Payment],
    now: Optional[datetime] = None,
    stale_after: Optional[timedelta] = None,
) -> PaymentValidation:
    """
    Classify an (order, payment) pair. Checks run in order and the first
    failure wins.
    """
    now = now or datetime.now(timezone.utc)
    stale_after = stale_after or timedelta(hours=settings.stale_pending_hours)

    if order.payment_method not in VALID_METHODS:
        return _invalid(ReasonCode.INVALID_METHOD)

    if order.payment_method == PaymentMethod.CARD.value and payment is None:
        return _invalid(ReasonCode.MISSING_PAYMENT)

    if payment is not None:
        if payment.status == PaymentStatus.FAILED.value:
            return _invalid(ReasonCode.FAILED, payment.failure_reason or ReasonCode.FAILED.description)
        if payment.status == PaymentStatus.CANCELED.value:
            return _invalid(ReasonCode.CANCELED)

        if (
            order.payment_status
            and order.payment_status != payment.status
            and (order.payment_status, payment.status) not in ALLOWED_TRANSITIONAL_PAIRS
        ):
            return _invalid(
                ReasonCode.STATUS_MISMATCH,
                f"Payment status mismatch: order={order.payment_status}, payment={payment.status}",
            )

    if order.is_paid and (payment is None or payment.status != PaymentStatus.COMPLETED.value):
        return _invalid(ReasonCode.PAID_WITHOUT_PAYMENT)

    if (
        payment is not None
        and order.payment_status == PaymentStatus.PENDING.value
        and payment.status == PaymentStatus.PENDING.value
        and now - _as_utc(order.created_at) > stale_after
    ):
        hours = int(stale_after.total_seconds() // 3600)
        return _invalid(ReasonCode.EXPIRED_PENDING, f"Payment pending for too long (over {hours} hours)")

    if payment is not None:
        if payment.method != order.payment_method or not _gateway_matches_method(payment.method, payment.gateway):
            return _invalid(
                ReasonCode.METHOD_MISMATCH,
                f"Payment method mismatch: order={order.payment_method}, "
                f"payment={payment.method} via {payment.gateway}",
            )

    return _valid()


@dataclass
class ReconciliationReport:
    checked: int = 0
    counts: Counter = field(default_factory=Counter)
    invalid: List[Tuple[Order, PaymentValidation]] = field(default_factory=list)

    @property
    def invalid_count(self) -> int:
        return len(self.invalid)

    def summary(self) -> Dict[str, int]:
        return dict(self.counts)


class ReconciliationService:
    """Runs the validator over stored orders."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _current_payments(self, orders: Sequence[Order]) -> Dict[uuid.UUID, Payment]:
        """Current attempt per order, loaded in one query."""
        if not orders:
            return {}
        result = await self.db.execute(
            select(Payment)
            .where(Payment.order_id.in_([o.id for o in orders]))
            .order_by(Payment.created_at.desc())
        )
        by_order: Dict[uuid.UUID, List[Payment]] = defaultdict(list)
        for payment in result.scalars().all():
            by_order[payment.order_id].append(payment)

        current: Dict[uuid.UUID, Payment] = {}
        for order in orders:
            attempts = by_order.get(order.id, [])
            chosen = next((p for p in attempts if p.id == order.current_payment_id), None)
            if chosen is None and attempts:
                chosen = attempts[0]
            if chosen is not None:
                current[order.id] = chosen
        return current

    async def annotate(self, orders: Sequence[Order]) -> List[Tuple[Order, Optional[Payment], PaymentValidation]]:
        payments = await self._current_payments(orders)
        now = datetime.now(timezone.utc)
        annotated = []
        for order in orders:
            payment = payments.get(order.id)
            annotated.append((order, payment, validate_order_payment(order, payment, now=now)))
        return annotated

    async def orders_for_buyer(self, user_id: str) -> List[Tuple[Order, Optional[Payment], PaymentValidation]]:
        """A buyer's own orders, hiding any whose payment does not reconcile."""
        result = await self.db.execute(
            select(Order)
            .where(Order.user_id == str(user_id))
            .order_by(Order.created_at.desc())
        )
        annotated = await self.annotate(list(result.scalars().all()))
        hidden = [a for a in annotated if not a[2].valid]
        if hidden:
            logger.info(f"Hiding {len(hidden)} orders with invalid payments from user {user_id}")
        return [a for a in annotated if a[2].valid]

    async def orders_for_admin(self) -> List[Tuple[Order, Optional[Payment], PaymentValidation]]:
        """Every order, each annotated with its validation result."""
        result = await self.db.execute(select(Order).order_by(Order.created_at.desc()))
        return await self.annotate(list(result.scalars().all()))

    async def build_report(self, batch_size: int = 500) -> ReconciliationReport:
        """Validate all orders in batches and tally the outcomes."""
        report = ReconciliationReport()
        offset = 0
        while True:
            result = await self.db.execute(
                select(Order).order_by(Order.created_at).offset(offset).limit(batch_size)
            )
            orders = list(result.scalars().all())
            if not orders:
                break
            for order, _, validation in await self.annotate(orders):
                report.checked += 1
                report.counts[validation.reason_code.value] += 1
                if not validation.valid:
                    report.invalid.append((order, validation))
            offset += batch_size

        logger.info(
            f"Reconciliation checked {report.checked} orders, "
            f"{report.invalid_count} inconsistent: {report.summary()}"
        )
        return report
