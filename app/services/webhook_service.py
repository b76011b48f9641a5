"""
Webhook Service - idempotent ingestion of gateway payment events.

Delivery is at-least-once and unordered, so every event is verified, routed
through a handler registered for its kind and offered to the same rank-gated
state machine the lifecycle controller uses. Replays and stale events are
acknowledged without changing anything.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Type

from redis.asyncio.client import Redis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import AlreadyProcessed, OrderNotFound, StoreUnavailable
from app.fsm.states import GatewayEventKind, PaymentStatus
from app.models.order import Order
from app.services.gateway import GatewayClient, GatewayEvent
from app.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

# Outcomes reported back to the gateway (always with HTTP 200)
PROCESSED = "processed"
DUPLICATE = "duplicate"
STALE = "stale"
IGNORED = "ignored"
ORDER_NOT_FOUND = "order_not_found"
CONFLICT = "conflict"


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    outcome: str
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    status: Optional[str] = None


class EventHandler:
    """
    Applies one kind of gateway event to its (Payment, Order) pair.

    Subclasses set `kind`; the target status comes from the kind.
    """

    kind: GatewayEventKind

    def __init__(self, payments: PaymentService):
        self.payments = payments

    def failure_reason(self, event: GatewayEvent) -> Optional[str]:
        return None

    async def _find_order(self, event: GatewayEvent) -> Optional[Order]:
        if not event.order_ref:
            return None
        try:
            return await self.payments.get_order(event.order_ref, lock=True)
        except OrderNotFound:
            return None

    def _result(self, event: GatewayEvent, outcome: str, order=None, payment=None) -> WebhookResult:
        return WebhookResult(
            event_id=event.id,
            event_type=event.type,
            outcome=outcome,
            order_id=str(order.id) if order is not None else None,
            payment_id=str(payment.id) if payment is not None else None,
            status=payment.status if payment is not None else None,
        )

    async def apply(self, event: GatewayEvent) -> WebhookResult:
        order = await self._find_order(event)
        if order is None:
            # The gateway cannot fix a bad reference; retrying would loop forever
            logger.error(
                f"Webhook {event.id} references unknown order {event.order_ref!r}",
                extra={"event_id": event.id, "transaction_id": event.transaction_id},
            )
            return self._result(event, ORDER_NOT_FOUND)

        payment = await self.payments.get_payment_by_transaction(event.transaction_id, lock=True)
        if payment is not None and payment.status == PaymentStatus.COMPLETED.value:
            logger.info(
                f"Payment {payment.id} already completed; discarding {event.type}",
                extra={"event_id": event.id, "payment_id": payment.id},
            )
            return self._result(event, DUPLICATE, order, payment)

        if payment is not None and payment.order_id != order.id:
            logger.error(
                f"Webhook {event.id}: transaction {event.transaction_id} belongs to order "
                f"{payment.order_id}, event says {order.id}",
                extra={"event_id": event.id, "payment_id": payment.id},
            )
            return self._result(event, CONFLICT, order, payment)

        created = payment is None
        if created:
            # Webhook raced ahead of the local create-intent write
            logger.warning(
                f"Creating payment for unseen transaction {event.transaction_id}",
                extra={"event_id": event.id, "order_id": order.id},
            )
            payment = self.payments.new_card_payment(order, event.intent)

        result = await self.payments.transition(
            order,
            payment,
            self.kind.target_status,
            failure_reason=self.failure_reason(event),
        )
        if result.applied or created:
            self.payments.record_intent(payment, event.intent)

        if result.applied:
            outcome = PROCESSED
        elif result.is_noop:
            outcome = DUPLICATE
        else:
            outcome = STALE
        return self._result(event, outcome, order, payment)


EVENT_HANDLERS: Dict[GatewayEventKind, Type[EventHandler]] = {}


def register_handler(handler_cls: Type[EventHandler]) -> Type[EventHandler]:
    """Register a handler class for its event kind."""
    EVENT_HANDLERS[handler_cls.kind] = handler_cls
    return handler_cls


@register_handler
class SucceededHandler(EventHandler):
    kind = GatewayEventKind.SUCCEEDED


@register_handler
class PaymentFailedHandler(EventHandler):
    kind = GatewayEventKind.PAYMENT_FAILED

    def failure_reason(self, event: GatewayEvent) -> Optional[str]:
        intent = event.intent
        return intent.failure_message or intent.failure_code or "Payment declined by gateway"


@register_handler
class CanceledHandler(EventHandler):
    kind = GatewayEventKind.CANCELED


@register_handler
class RequiresActionHandler(EventHandler):
    kind = GatewayEventKind.REQUIRES_ACTION


@register_handler
class ProcessingHandler(EventHandler):
    kind = GatewayEventKind.PROCESSING


class WebhookService:
    """Verifies, deduplicates and dispatches gateway webhook events."""

    DEDUPE_KEY = "webhook:event:{event_id}"

    def __init__(
        self,
        db: AsyncSession,
        gateway: GatewayClient,
        redis: Optional[Redis] = None,
        handlers: Optional[Dict[GatewayEventKind, Type[EventHandler]]] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.redis = redis
        self.handlers = handlers if handlers is not None else EVENT_HANDLERS

    async def is_duplicate_event(self, event_id: str) -> bool:
        """Fast-path check; the rank gate is what actually guarantees idempotency."""
        if self.redis is None:
            return False
        try:
            return bool(await self.redis.exists(self.DEDUPE_KEY.format(event_id=event_id)))
        except RedisError as e:
            logger.warning(f"Redis dedupe lookup failed for {event_id}: {e}")
            return False

    async def remember_event(self, event_id: str) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.setex(
                self.DEDUPE_KEY.format(event_id=event_id),
                settings.webhook_dedupe_ttl_seconds,
                "1",
            )
        except RedisError as e:
            logger.warning(f"Redis dedupe write failed for {event_id}: {e}")

    async def ingest(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Verify and apply one webhook delivery.

        Raises InvalidSignature before touching any state, and
        StoreUnavailable when the database fails so the gateway retries.
        """
        event = self.gateway.construct_event(payload, signature)
        logger.info(
            f"Webhook received: {event.type} ({event.id})",
            extra={"event_id": event.id, "event_kind": event.type, "transaction_id": event.transaction_id},
        )

        handler_cls = self.handlers.get(event.kind) if event.kind else None
        if handler_cls is None:
            logger.info(f"Unhandled webhook event type: {event.type}")
            return WebhookResult(event_id=event.id, event_type=event.type, outcome=IGNORED)

        if await self.is_duplicate_event(event.id):
            logger.info(f"Duplicate event {event.id} ignored")
            return WebhookResult(event_id=event.id, event_type=event.type, outcome=DUPLICATE)

        payments = PaymentService(self.db, self.gateway)
        try:
            result = await handler_cls(payments).apply(event)
            await self.db.commit()
        except AlreadyProcessed:
            await self.db.rollback()
            result = WebhookResult(
                event_id=event.id,
                event_type=event.type,
                outcome=CONFLICT,
                order_id=event.order_ref,
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Store failure while applying webhook {event.id}: {e}", exc_info=True)
            raise StoreUnavailable("Payment store unavailable") from e

        if result.outcome in (PROCESSED, DUPLICATE, STALE):
            await self.remember_event(event.id)

        logger.info(
            f"Webhook {event.id} {result.outcome}",
            extra={
                "event_id": event.id,
                "outcome": result.outcome,
                "order_id": result.order_id,
                "payment_id": result.payment_id,
            },
        )
        return result
