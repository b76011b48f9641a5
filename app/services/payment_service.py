"""
Payment Service - payment lifecycle for orders.

Creates and confirms gateway payment intents, records cash payments and
applies administrative overrides. Every status change goes through the rank
gate in `app.fsm.machine` and updates the Payment and its Order inside the
same transaction, with the Order row locked first.
"""

import uuid
import logging
from datetime import datetime, timezone, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Tuple, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import Principal
from app.config import settings
from app.errors import (
    AlreadyProcessed,
    AmountMismatch,
    Forbidden,
    GatewayError,
    OrderNotFound,
    PaymentNotFound,
    SessionExpired,
    ValidationError,
)
from app.fsm.machine import PaymentStateMachine, TransitionResult, can_transition
from app.fsm.states import (
    INTENT_STATUS_MAP,
    OrderStatus,
    PaymentGateway,
    PaymentMethod,
    PaymentStatus,
)
from app.models.order import Order
from app.models.payment import Payment
from app.services.gateway import GatewayClient, GatewayIntent

logger = logging.getLogger(__name__)


def map_intent_status(intent: GatewayIntent) -> PaymentStatus:
    """Translate a gateway intent status into a payment status."""
    if intent.status == "requires_payment_method" and (intent.failure_code or intent.failure_message):
        return PaymentStatus.FAILED
    status = INTENT_STATUS_MAP.get(intent.status)
    if status is None:
        raise GatewayError(f"Unexpected payment intent status: {intent.status!r}")
    return status


async def current_payment_for(db: AsyncSession, order: Order) -> Optional[Payment]:
    """The attempt the order's payment summary mirrors (latest if unset)."""
    if order.current_payment_id:
        payment = await db.get(Payment, order.current_payment_id)
        if payment:
            return payment
    result = await db.execute(
        select(Payment)
        .where(Payment.order_id == order.id)
        .order_by(Payment.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def _parse_uuid(value: Union[str, uuid.UUID], error: type) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        raise error(f"Invalid id: {value}")


class PaymentService:
    """Service for the payment lifecycle of an order."""

    def __init__(self, db: AsyncSession, gateway: GatewayClient):
        self.db = db
        self.gateway = gateway
        self.amount_tolerance = Decimal(settings.amount_tolerance)
        self.intent_freshness = timedelta(seconds=settings.intent_freshness_seconds)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_order(self, order_id: Union[str, uuid.UUID], lock: bool = False) -> Order:
        """Fetch an order; with `lock`, take the row lock and reload it."""
        order_uuid = _parse_uuid(order_id, OrderNotFound)
        stmt = select(Order).where(Order.id == order_uuid)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def get_payment(self, payment_id: Union[str, uuid.UUID], lock: bool = False) -> Payment:
        payment_uuid = _parse_uuid(payment_id, PaymentNotFound)
        stmt = select(Payment).where(Payment.id == payment_uuid)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        payment = result.scalar_one_or_none()
        if not payment:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        return payment

    async def get_payment_by_transaction(
        self,
        transaction_id: str,
        lock: bool = False,
    ) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.transaction_id == transaction_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_current_payment(self, order: Order) -> Optional[Payment]:
        return await current_payment_for(self.db, order)

    async def _completed_payment(self, order_id: uuid.UUID, exclude: Optional[uuid.UUID] = None) -> Optional[Payment]:
        stmt = select(Payment).where(
            Payment.order_id == order_id,
            Payment.status == PaymentStatus.COMPLETED.value,
        )
        if exclude is not None:
            stmt = stmt.where(Payment.id != exclude)
        result = await self.db.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @staticmethod
    def _authorize(order: Order, requester: Principal) -> None:
        if not requester.can_access(order.user_id):
            raise Forbidden("Not authorized to access this order")

    @staticmethod
    def _require_admin(requester: Principal) -> None:
        if not requester.is_admin:
            raise Forbidden("Not authorized as an admin")

    def _check_amount(self, order: Order, amount) -> Decimal:
        if amount is None:
            raise ValidationError("Amount is required")
        try:
            requested = Decimal(str(amount))
        except InvalidOperation:
            raise ValidationError(f"Invalid amount: {amount}")
        expected = Decimal(order.total_price)
        if abs(requested - expected) > self.amount_tolerance:
            raise AmountMismatch(
                f"Amount mismatch: expected {expected}, received {requested}"
            )
        return expected

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------

    def _machine(self) -> PaymentStateMachine:
        return PaymentStateMachine(now=datetime.now(timezone.utc))

    def new_card_payment(self, order: Order, intent: GatewayIntent) -> Payment:
        """A fresh pending card attempt for `intent`, attached to the session."""
        payment = Payment(
            id=uuid.uuid4(),
            order_id=order.id,
            user_id=order.user_id,
            amount=Decimal(order.total_price),
            currency=(intent.currency or settings.default_currency).lower(),
            method=PaymentMethod.CARD.value,
            gateway=self.gateway.name,
            transaction_id=intent.id,
            status=PaymentStatus.PENDING.value,
            gateway_response=[],
        )
        self.db.add(payment)
        return payment

    @staticmethod
    def record_intent(payment: Payment, intent: GatewayIntent) -> None:
        """Append the gateway's view to the audit trail and copy card details."""
        payment.record_gateway_response(intent.snapshot())
        if intent.card:
            payment.card_last4 = intent.card.last4
            payment.card_brand = intent.card.brand
            payment.card_expiry = intent.card.expiry

    async def transition(
        self,
        order: Order,
        payment: Payment,
        new_status: PaymentStatus,
        failure_reason: Optional[str] = None,
    ) -> TransitionResult:
        """
        Rank-gated status change on a locked (order, payment) pair.

        Only the order's current attempt is projected onto it, except that a
        completed attempt always becomes current. A second completed attempt
        for the same order is refused.
        """
        if (
            new_status == PaymentStatus.COMPLETED
            and payment.status != PaymentStatus.COMPLETED.value
            and can_transition(PaymentStatus(payment.status), new_status)
        ):
            other = await self._completed_payment(order.id, exclude=payment.id)
            if other is not None:
                logger.error(
                    f"Order {order.id} already completed by payment {other.id}; "
                    f"refusing to complete {payment.id}",
                    extra={"order_id": order.id, "payment_id": payment.id},
                )
                raise AlreadyProcessed("Order already has a completed payment")

        project = (
            order.current_payment_id in (None, payment.id)
            or new_status == PaymentStatus.COMPLETED
        )
        result = self._machine().apply(payment, order, new_status, project=project)

        if result.applied and new_status == PaymentStatus.FAILED:
            payment.failure_reason = (failure_reason or "Payment failed")[:500]
        return result

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_intent(
        self,
        order_id: str,
        amount,
        currency: Optional[str],
        requester: Principal,
    ) -> Tuple[Payment, GatewayIntent]:
        """
        Start a card payment attempt.

        Validates ownership and amount, asks the gateway for an intent and
        records a pending Payment. Nothing is written if the gateway fails.
        """
        order = await self.get_order(order_id)
        self._authorize(order, requester)
        charge = self._check_amount(order, amount)
        if order.is_paid:
            raise AlreadyProcessed("Order is already paid")

        currency = (currency or settings.default_currency).lower()
        intent = await self.gateway.create_intent(
            amount=charge,
            currency=currency,
            order_ref=str(order.id),
            description=f"Order {order.id}",
        )

        order = await self.get_order(order.id, lock=True)
        if order.is_paid:
            raise AlreadyProcessed("Order is already paid")

        payment = self.new_card_payment(order, intent)
        self.record_intent(payment, intent)
        self._machine().project(payment, order, PaymentStatus.PENDING)

        await self.db.commit()
        logger.info(
            f"Payment intent {intent.id} created for order {order.id}: {charge} {currency}",
            extra={"order_id": order.id, "payment_id": payment.id, "transaction_id": intent.id},
        )
        return payment, intent

    async def confirm_intent(
        self,
        payment_intent_id: str,
        order_id: str,
        requester: Principal,
    ) -> Tuple[Payment, Order]:
        """
        Reconcile a client-side confirmation with the gateway's view.

        The intent is re-read from the gateway; the client's claim is never
        trusted on its own.
        """
        if not payment_intent_id:
            raise ValidationError("Payment Intent ID is required")

        order = await self.get_order(order_id)
        self._authorize(order, requester)

        intent = await self.gateway.retrieve_intent(payment_intent_id)
        if intent.order_ref and intent.order_ref != str(order.id):
            raise ValidationError("Payment intent does not belong to this order")

        now = datetime.now(timezone.utc)
        if now - intent.created > self.intent_freshness:
            raise SessionExpired("Payment session expired. Please start a new payment.")

        new_status = map_intent_status(intent)

        order = await self.get_order(order.id, lock=True)
        payment = await self.get_payment_by_transaction(intent.id, lock=True)
        if payment is not None and payment.status == PaymentStatus.COMPLETED.value:
            raise AlreadyProcessed("Payment already processed")
        if payment is not None and payment.order_id != order.id:
            raise ValidationError("Payment intent does not belong to this order")
        created = payment is None
        if created:
            logger.warning(
                f"No local payment for intent {intent.id}; creating it on confirm",
                extra={"order_id": order.id, "transaction_id": intent.id},
            )
            payment = self.new_card_payment(order, intent)

        result = await self.transition(order, payment, new_status, failure_reason=intent.failure_message)
        if result.applied or created:
            self.record_intent(payment, intent)

        await self.db.commit()
        return payment, order

    async def confirm_cash(
        self,
        order_id: str,
        amount,
        requester: Principal,
    ) -> Tuple[Payment, Order]:
        """
        Record a cash-on-delivery payment.

        The order is accepted for fulfillment while the payment stays
        financially pending until an admin marks it completed.
        """
        order = await self.get_order(order_id, lock=True)
        self._authorize(order, requester)
        charge = self._check_amount(order, amount)
        if order.is_paid:
            raise AlreadyProcessed("Order is already paid")

        payment = None
        current = await self.get_current_payment(order)
        if (
            current is not None
            and current.method == PaymentMethod.CASH.value
            and current.status == PaymentStatus.PENDING.value
        ):
            payment = current

        now = datetime.now(timezone.utc)
        if payment is None:
            transaction_id = f"cash_{uuid.uuid4().hex}"
            payment = Payment(
                id=uuid.uuid4(),
                order_id=order.id,
                user_id=order.user_id,
                amount=charge,
                currency=settings.default_currency,
                method=PaymentMethod.CASH.value,
                gateway=PaymentGateway.CASH.value,
                transaction_id=transaction_id,
                status=PaymentStatus.PENDING.value,
                gateway_response=[],
            )
            payment.record_gateway_response({
                "id": transaction_id,
                "status": PaymentStatus.PENDING.value,
                "method": PaymentMethod.CASH.value,
                "update_time": now.isoformat(),
            })
            self.db.add(payment)

        PaymentStateMachine(now=now).project(payment, order, PaymentStatus.PENDING)
        if order.status == OrderStatus.PENDING.value:
            order.status = OrderStatus.CONFIRMED.value

        await self.db.commit()
        logger.info(
            f"Cash payment {payment.transaction_id} recorded for order {order.id}",
            extra={"order_id": order.id, "payment_id": payment.id},
        )
        return payment, order

    async def update_status(
        self,
        payment_id: str,
        new_status: Union[str, PaymentStatus],
        requester: Principal,
    ) -> Tuple[Payment, Order]:
        """Administrative override, still subject to the rank gate."""
        self._require_admin(requester)
        try:
            status = PaymentStatus(new_status)
        except ValueError:
            raise ValidationError(f"Invalid payment status: {new_status}")

        payment = await self.get_payment(payment_id)
        order = await self.get_order(payment.order_id, lock=True)
        payment = await self.get_payment(payment.id, lock=True)

        current = PaymentStatus(payment.status)
        if not can_transition(current, status):
            raise ValidationError(
                f"Cannot change payment status from {current.value} to {status.value}"
            )

        await self.transition(order, payment, status)
        await self.db.commit()
        logger.info(
            f"Admin {requester.id} set payment {payment.id} to {status.value}",
            extra={"payment_id": payment.id, "order_id": order.id, "to_status": status.value},
        )
        return payment, order

    async def refund(
        self,
        payment_id: str,
        requester: Principal,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> Tuple[Payment, Order]:
        """
        Refund a completed payment. Refunding an already refunded payment
        is a no-op.

        The status is checked with the order and payment locked, and the
        gateway call carries a per-payment idempotency key, so concurrent
        refunds of one payment pay out at most once.
        """
        self._require_admin(requester)
        payment = await self.get_payment(payment_id)
        order = await self.get_order(payment.order_id, lock=True)
        payment = await self.get_payment(payment.id, lock=True)

        if payment.status == PaymentStatus.REFUNDED.value:
            await self.db.commit()
            return payment, order
        if payment.status != PaymentStatus.COMPLETED.value:
            raise ValidationError("Only completed payments can be refunded")
        if amount is not None and (amount <= 0 or amount > Decimal(payment.amount)):
            raise ValidationError("Refund amount must be positive and not exceed the payment amount")

        refund = None
        if payment.gateway != PaymentGateway.CASH.value and payment.transaction_id:
            refund = await self.gateway.refund(
                payment.transaction_id,
                amount=amount,
                reason=reason,
                idempotency_key=f"refund-{payment.id}",
            )
        if refund is not None:
            payment.record_gateway_response({
                "id": refund.id,
                "status": refund.status,
                "amount": str(refund.amount),
                "reason": reason,
                "update_time": datetime.now(timezone.utc).isoformat(),
            })

        await self.transition(order, payment, PaymentStatus.REFUNDED)
        await self.db.commit()
        logger.info(
            f"Payment {payment.id} refunded by {requester.id}",
            extra={"payment_id": payment.id, "order_id": order.id},
        )
        return payment, order

    # ------------------------------------------------------------------
    # Read paths
    # ------------------------------------------------------------------

    async def get_order_payments(
        self,
        order_id: str,
        requester: Principal,
    ) -> Tuple[Order, List[Payment]]:
        order = await self.get_order(order_id)
        self._authorize(order, requester)
        result = await self.db.execute(
            select(Payment)
            .where(Payment.order_id == order.id)
            .order_by(Payment.created_at.desc())
        )
        return order, list(result.scalars().all())

    async def get_user_payments(self, user_id: str, requester: Principal) -> List[Payment]:
        if not requester.can_access(user_id):
            raise Forbidden("Not authorized to view these payments")
        result = await self.db.execute(
            select(Payment)
            .where(Payment.user_id == str(user_id))
            .order_by(Payment.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_payments(self, requester: Principal) -> List[Payment]:
        self._require_admin(requester)
        result = await self.db.execute(
            select(Payment).order_by(Payment.created_at.desc())
        )
        return list(result.scalars().all())
