"""
Tests for the webhook ingestion pipeline.
"""

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import RedisError
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.errors import AlreadyProcessed, InvalidSignature, StoreUnavailable
from app.fsm.states import GatewayEventKind, OrderStatus, PaymentStatus
from app.models import Payment
from app.services.payment_service import PaymentService
from app.services.reconciliation import validate_order_payment
from app.services.webhook_service import (
    CONFLICT,
    DUPLICATE,
    EVENT_HANDLERS,
    IGNORED,
    ORDER_NOT_FOUND,
    PROCESSED,
    STALE,
    WebhookService,
)

GOOD_CARD = ("4242424242424242", "12/99", "123")


async def start_payment(db, gateway, order, buyer):
    payment, intent = await PaymentService(db, gateway).create_intent(
        str(order.id), Decimal(order.total_price), None, buyer
    )
    return payment, intent


def signed(gateway, event_type, intent, event_id=None):
    body = gateway.build_event(event_type, intent, event_id=event_id)
    return body, gateway.sign(body)


def test_every_event_kind_has_a_handler():
    assert set(EVENT_HANDLERS) == set(GatewayEventKind)


class TestWebhookIngest:
    """Tests for WebhookService.ingest."""

    @pytest.mark.asyncio
    async def test_end_to_end_success(self, db, gateway, order, buyer):
        payment, intent = await start_payment(db, gateway, order, buyer)
        gateway.confirm_card(intent.id, *GOOD_CARD)
        body, signature = signed(gateway, "payment_intent.succeeded", intent, event_id="evt_1")

        result = await WebhookService(db, gateway).ingest(body, signature)

        assert result.outcome == PROCESSED
        assert result.payment_id == str(payment.id)
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.card_last4 == "4242"
        assert order.is_paid is True
        assert order.status == OrderStatus.PAID.value
        assert order.total_price == Decimal("1000.00")
        assert validate_order_payment(order, payment).valid

    @pytest.mark.asyncio
    async def test_replay_changes_nothing(self, db, gateway, order, buyer):
        payment, intent = await start_payment(db, gateway, order, buyer)
        gateway.confirm_card(intent.id, *GOOD_CARD)
        body, signature = signed(gateway, "payment_intent.succeeded", intent, event_id="evt_1")
        service = WebhookService(db, gateway)
        await service.ingest(body, signature)
        await db.refresh(payment)
        await db.refresh(order)
        snapshot = (
            payment.status,
            payment.processed_at,
            list(payment.gateway_response),
            order.paid_at,
            dict(order.payment_timestamps),
        )

        result = await service.ingest(body, signature)

        assert result.outcome == DUPLICATE
        assert snapshot == (
            payment.status,
            payment.processed_at,
            list(payment.gateway_response),
            order.paid_at,
            dict(order.payment_timestamps),
        )

    @pytest.mark.asyncio
    async def test_late_processing_after_completed_is_discarded(self, db, gateway, order, buyer):
        payment, intent = await start_payment(db, gateway, order, buyer)
        gateway.confirm_card(intent.id, *GOOD_CARD)
        service = WebhookService(db, gateway)
        await service.ingest(*signed(gateway, "payment_intent.succeeded", intent))

        result = await service.ingest(*signed(gateway, "payment_intent.processing", intent))

        assert result.outcome == DUPLICATE
        assert payment.status == PaymentStatus.COMPLETED.value
        assert order.payment_status == PaymentStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_out_of_order_events_are_stale(self, db, gateway, order, buyer):
        payment, intent = await start_payment(db, gateway, order, buyer)
        intent.failure_code = "card_declined"
        intent.failure_message = "Your card was declined."
        service = WebhookService(db, gateway)

        failed = await service.ingest(*signed(gateway, "payment_intent.payment_failed", intent))
        late = await service.ingest(*signed(gateway, "payment_intent.requires_action", intent))

        assert failed.outcome == PROCESSED
        assert late.outcome == STALE
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.failure_reason == "Your card was declined."
        assert "failed" in order.payment_timestamps

    @pytest.mark.asyncio
    async def test_success_after_failure_wins(self, db, gateway, order, buyer):
        payment, intent = await start_payment(db, gateway, order, buyer)
        service = WebhookService(db, gateway)
        await service.ingest(*signed(gateway, "payment_intent.canceled", intent))
        gateway.confirm_card(intent.id, *GOOD_CARD)

        result = await service.ingest(*signed(gateway, "payment_intent.succeeded", intent))

        assert result.outcome == PROCESSED
        assert payment.status == PaymentStatus.COMPLETED.value
        assert order.is_paid is True

    @pytest.mark.asyncio
    async def test_unknown_order_is_acknowledged(self, db, gateway):
        intent = await gateway.create_intent(Decimal("10"), "inr", order_ref=str(uuid.uuid4()))

        result = await WebhookService(db, gateway).ingest(*signed(gateway, "payment_intent.succeeded", intent))

        assert result.outcome == ORDER_NOT_FOUND

    @pytest.mark.asyncio
    async def test_missing_order_reference(self, db, gateway):
        intent = await gateway.create_intent(Decimal("10"), "inr", order_ref="")

        result = await WebhookService(db, gateway).ingest(*signed(gateway, "payment_intent.succeeded", intent))

        assert result.outcome == ORDER_NOT_FOUND

    @pytest.mark.asyncio
    async def test_unhandled_event_type(self, db, gateway, order):
        intent = await gateway.create_intent(Decimal("1000"), "inr", order_ref=str(order.id))

        result = await WebhookService(db, gateway).ingest(*signed(gateway, "charge.refunded", intent))

        assert result.outcome == IGNORED
        assert order.payment_status is None

    @pytest.mark.asyncio
    async def test_invalid_signature_mutates_nothing(self, db, gateway, order, buyer):
        payment, intent = await start_payment(db, gateway, order, buyer)
        gateway.confirm_card(intent.id, *GOOD_CARD)
        body, _ = signed(gateway, "payment_intent.succeeded", intent)

        with pytest.raises(InvalidSignature):
            await WebhookService(db, gateway).ingest(body, "deadbeef")

        assert payment.status == PaymentStatus.PENDING.value
        assert order.is_paid is False

    @pytest.mark.asyncio
    async def test_event_before_local_row(self, db, gateway, order):
        intent = await gateway.create_intent(Decimal("1000"), "inr", order_ref=str(order.id))
        gateway.confirm_card(intent.id, *GOOD_CARD)

        result = await WebhookService(db, gateway).ingest(*signed(gateway, "payment_intent.succeeded", intent))

        assert result.outcome == PROCESSED
        payment = await PaymentService(db, gateway).get_payment_by_transaction(intent.id)
        assert payment is not None
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.amount == Decimal("1000.00")
        assert order.current_payment_id == payment.id
        assert order.is_paid is True

    @pytest.mark.asyncio
    async def test_transaction_from_another_order(self, db, gateway, order, order_factory, buyer):
        payment, intent = await start_payment(db, gateway, order, buyer)
        other = order_factory()
        db.add(other)
        await db.commit()
        intent.order_ref = str(other.id)

        result = await WebhookService(db, gateway).ingest(*signed(gateway, "payment_intent.succeeded", intent))

        assert result.outcome == CONFLICT
        assert payment.status == PaymentStatus.PENDING.value
        assert other.is_paid is False

    @pytest.mark.asyncio
    async def test_second_success_for_paid_order(self, db, gateway, order, buyer):
        first, first_intent = await start_payment(db, gateway, order, buyer)
        second, second_intent = await start_payment(db, gateway, order, buyer)
        gateway.confirm_card(first_intent.id, *GOOD_CARD)
        gateway.confirm_card(second_intent.id, *GOOD_CARD)
        service = WebhookService(db, gateway)
        await service.ingest(*signed(gateway, "payment_intent.succeeded", first_intent))

        result = await service.ingest(*signed(gateway, "payment_intent.succeeded", second_intent))

        assert result.outcome == CONFLICT
        # The refused attempt was rolled back
        for obj in (first, second, order):
            await db.refresh(obj)
        assert first.status == PaymentStatus.COMPLETED.value
        assert second.status == PaymentStatus.PENDING.value
        assert order.current_payment_id == first.id


async def settled_state(db, order, payment):
    """The observable end state of a card payment and its order."""
    await db.refresh(payment)
    await db.refresh(order)
    completed = await db.execute(
        select(func.count()).select_from(Payment).where(
            Payment.order_id == order.id,
            Payment.status == PaymentStatus.COMPLETED.value,
        )
    )
    return (
        payment.status,
        order.is_paid,
        order.status,
        order.payment_status,
        order.current_payment_id == payment.id,
        completed.scalar_one(),
        validate_order_payment(order, payment).valid,
    )


SETTLED = (
    PaymentStatus.COMPLETED.value,
    True,
    OrderStatus.PAID.value,
    PaymentStatus.COMPLETED.value,
    True,
    1,
    True,
)


class TestConfirmAndWebhookRace:
    """A client confirm and a succeeded webhook for one transaction, in either order."""

    @pytest.mark.asyncio
    async def test_confirm_then_webhook(self, db, gateway, order, buyer):
        payment, intent = await start_payment(db, gateway, order, buyer)
        gateway.confirm_card(intent.id, *GOOD_CARD)

        await PaymentService(db, gateway).confirm_intent(intent.id, str(order.id), buyer)
        result = await WebhookService(db, gateway).ingest(
            *signed(gateway, "payment_intent.succeeded", intent)
        )

        assert result.outcome == DUPLICATE
        assert await settled_state(db, order, payment) == SETTLED

    @pytest.mark.asyncio
    async def test_webhook_then_confirm(self, db, gateway, order, buyer):
        payment, intent = await start_payment(db, gateway, order, buyer)
        gateway.confirm_card(intent.id, *GOOD_CARD)

        result = await WebhookService(db, gateway).ingest(
            *signed(gateway, "payment_intent.succeeded", intent)
        )
        with pytest.raises(AlreadyProcessed):
            await PaymentService(db, gateway).confirm_intent(intent.id, str(order.id), buyer)

        assert result.outcome == PROCESSED
        assert await settled_state(db, order, payment) == SETTLED


class TestWebhookDedupe:
    """Tests for the Redis fast path."""

    @pytest.mark.asyncio
    async def test_seen_event_short_circuits(self, db, gateway, order, buyer):
        payment, intent = await start_payment(db, gateway, order, buyer)
        gateway.confirm_card(intent.id, *GOOD_CARD)
        redis = AsyncMock()
        redis.exists.return_value = 1

        result = await WebhookService(db, gateway, redis=redis).ingest(
            *signed(gateway, "payment_intent.succeeded", intent, event_id="evt_seen")
        )

        assert result.outcome == DUPLICATE
        assert payment.status == PaymentStatus.PENDING.value
        redis.exists.assert_awaited_once_with("webhook:event:evt_seen")

    @pytest.mark.asyncio
    async def test_applied_event_is_remembered(self, db, gateway, order, buyer):
        _, intent = await start_payment(db, gateway, order, buyer)
        gateway.confirm_card(intent.id, *GOOD_CARD)
        redis = AsyncMock()
        redis.exists.return_value = 0

        await WebhookService(db, gateway, redis=redis).ingest(
            *signed(gateway, "payment_intent.succeeded", intent, event_id="evt_new")
        )

        key, ttl, _ = redis.setex.await_args.args
        assert key == "webhook:event:evt_new"
        assert ttl > 0

    @pytest.mark.asyncio
    async def test_redis_outage_falls_back_to_rank_gate(self, db, gateway, order, buyer):
        payment, intent = await start_payment(db, gateway, order, buyer)
        gateway.confirm_card(intent.id, *GOOD_CARD)
        redis = AsyncMock()
        redis.exists.side_effect = RedisError("connection refused")
        redis.setex.side_effect = RedisError("connection refused")

        result = await WebhookService(db, gateway, redis=redis).ingest(
            *signed(gateway, "payment_intent.succeeded", intent)
        )

        assert result.outcome == PROCESSED
        assert payment.status == PaymentStatus.COMPLETED.value


class TestStoreFailure:
    @pytest.mark.asyncio
    async def test_store_failure_is_retryable(self, db, gateway, order, buyer):
        _, intent = await start_payment(db, gateway, order, buyer)
        gateway.confirm_card(intent.id, *GOOD_CARD)
        db.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("database is locked")))

        with pytest.raises(StoreUnavailable):
            await WebhookService(db, gateway).ingest(*signed(gateway, "payment_intent.succeeded", intent))
