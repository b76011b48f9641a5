"""
Tests for the reconciliation validator and service.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.fsm.states import PaymentGateway, PaymentMethod, PaymentStatus, ReasonCode
from app.services.payment_service import PaymentService
from app.services.reconciliation import ReconciliationService, validate_order_payment

NOW = datetime.now(timezone.utc) + timedelta(minutes=1)


def check(order, payment):
    return validate_order_payment(order, payment, now=NOW)


class TestValidateOrderPayment:
    """Each reason code, in check order."""

    def test_valid_completed_card(self, order_factory, payment_factory):
        order = order_factory(payment_status="completed", is_paid=True)
        payment = payment_factory(order, status=PaymentStatus.COMPLETED)

        result = check(order, payment)

        assert result.valid
        assert result.reason_code == ReasonCode.VALID

    def test_invalid_method(self, order_factory):
        order = order_factory(payment_method="paypal")
        assert check(order, None).reason_code == ReasonCode.INVALID_METHOD

    def test_missing_card_payment(self, order_factory):
        assert check(order_factory(), None).reason_code == ReasonCode.MISSING_PAYMENT

    def test_cash_order_without_payment_is_valid(self, order_factory):
        order = order_factory(method=PaymentMethod.CASH)
        assert check(order, None).valid

    def test_failed(self, order_factory, payment_factory):
        order = order_factory(payment_status="failed")
        payment = payment_factory(order, status=PaymentStatus.FAILED, failure_reason="Card has expired")

        result = check(order, payment)

        assert result.reason_code == ReasonCode.FAILED
        assert result.details == "Card has expired"

    def test_canceled(self, order_factory, payment_factory):
        order = order_factory(payment_status="canceled")
        payment = payment_factory(order, status=PaymentStatus.CANCELED)
        assert check(order, payment).reason_code == ReasonCode.CANCELED

    def test_status_mismatch(self, order_factory, payment_factory):
        order = order_factory(payment_status="requires_action")
        payment = payment_factory(order, status=PaymentStatus.COMPLETED)
        assert check(order, payment).reason_code == ReasonCode.STATUS_MISMATCH

    @pytest.mark.parametrize("payment_status", [PaymentStatus.COMPLETED, PaymentStatus.PROCESSING])
    def test_transitional_pairs_allowed(self, order_factory, payment_factory, payment_status):
        order = order_factory(payment_status="pending")
        payment = payment_factory(order, status=payment_status)
        assert check(order, payment).reason_code != ReasonCode.STATUS_MISMATCH

    def test_paid_without_payment(self, order_factory):
        order = order_factory(method=PaymentMethod.CASH, is_paid=True)
        assert check(order, None).reason_code == ReasonCode.PAID_WITHOUT_PAYMENT

    def test_paid_with_pending_payment(self, order_factory, payment_factory):
        order = order_factory(payment_status="pending", is_paid=True)
        payment = payment_factory(order)
        assert check(order, payment).reason_code == ReasonCode.PAID_WITHOUT_PAYMENT

    def test_expired_pending(self, order_factory, payment_factory):
        order = order_factory(payment_status="pending", created_at=NOW - timedelta(hours=25))
        payment = payment_factory(order)

        result = check(order, payment)

        assert result.reason_code == ReasonCode.EXPIRED_PENDING
        assert "24 hours" in result.details

    def test_recent_pending_is_valid(self, order_factory, payment_factory):
        order = order_factory(payment_status="pending", created_at=NOW - timedelta(hours=23))
        payment = payment_factory(order)
        assert check(order, payment).valid

    def test_naive_created_at(self, order_factory, payment_factory):
        order = order_factory(payment_status="pending", created_at=(NOW - timedelta(hours=48)).replace(tzinfo=None))
        payment = payment_factory(order)
        assert check(order, payment).reason_code == ReasonCode.EXPIRED_PENDING

    def test_method_mismatch(self, order_factory, payment_factory):
        order = order_factory(method=PaymentMethod.CASH, payment_status="pending")
        payment = payment_factory(order)
        assert check(order, payment).reason_code == ReasonCode.METHOD_MISMATCH

    def test_cash_via_card_gateway(self, order_factory, payment_factory):
        order = order_factory(method=PaymentMethod.CASH, payment_status="pending")
        payment = payment_factory(order, method=PaymentMethod.CASH, gateway=PaymentGateway.STRIPE)
        assert check(order, payment).reason_code == ReasonCode.METHOD_MISMATCH

    def test_first_failure_wins(self, order_factory, payment_factory):
        order = order_factory(
            payment_status="completed",
            is_paid=True,
            created_at=NOW - timedelta(days=3),
        )
        payment = payment_factory(order, status=PaymentStatus.FAILED)
        assert check(order, payment).reason_code == ReasonCode.FAILED

    def test_to_dict(self, order_factory):
        data = check(order_factory(), None).to_dict()
        assert data == {
            "valid": False,
            "reasonCode": "missing_payment",
            "details": ReasonCode.MISSING_PAYMENT.description,
        }


class TestReconciliationService:
    """Tests for running the validator over stored orders."""

    @pytest.mark.asyncio
    async def test_buyer_sees_only_valid_orders(self, db, gateway, order_factory, buyer):
        paid = order_factory()
        unpaid = order_factory()
        someone_else = order_factory(user_id="buyer-9")
        db.add_all([paid, unpaid, someone_else])
        await db.commit()
        await PaymentService(db, gateway).create_intent(str(paid.id), Decimal("1000"), None, buyer)

        annotated = await ReconciliationService(db).orders_for_buyer(buyer.id)

        assert [o.id for o, _, _ in annotated] == [paid.id]

    @pytest.mark.asyncio
    async def test_admin_sees_everything_annotated(self, db, gateway, order_factory, buyer):
        with_payment = order_factory()
        without_payment = order_factory()
        db.add_all([with_payment, without_payment])
        await db.commit()
        payment, _ = await PaymentService(db, gateway).create_intent(
            str(with_payment.id), Decimal("1000"), None, buyer
        )

        annotated = await ReconciliationService(db).orders_for_admin()

        by_id = {o.id: (p, v) for o, p, v in annotated}
        assert by_id[with_payment.id][0].id == payment.id
        assert by_id[with_payment.id][1].valid
        assert by_id[without_payment.id][0] is None
        assert by_id[without_payment.id][1].reason_code == ReasonCode.MISSING_PAYMENT

    @pytest.mark.asyncio
    async def test_current_attempt_is_used(self, db, gateway, order, buyer):
        service = PaymentService(db, gateway)
        first, _ = await service.create_intent(str(order.id), Decimal("1000"), None, buyer)
        second, _ = await service.create_intent(str(order.id), Decimal("1000"), None, buyer)

        [(_, payment, validation)] = await ReconciliationService(db).annotate([order])

        assert payment.id == second.id
        assert validation.valid

    @pytest.mark.asyncio
    async def test_report(self, db, order_factory, payment_factory):
        good = order_factory(payment_status="completed", is_paid=True)
        missing = order_factory()
        stale = order_factory(payment_status="pending", created_at=datetime.now(timezone.utc) - timedelta(hours=30))
        db.add_all([good, missing, stale])
        await db.flush()
        good_payment = payment_factory(good, status=PaymentStatus.COMPLETED)
        stale_payment = payment_factory(stale)
        good.current_payment_id = good_payment.id
        stale.current_payment_id = stale_payment.id
        db.add_all([good_payment, stale_payment])
        await db.commit()

        report = await ReconciliationService(db).build_report(batch_size=2)

        assert report.checked == 3
        assert report.invalid_count == 2
        assert report.summary() == {"valid": 1, "missing_payment": 1, "expired_pending": 1}
