"""
Payment and order state definitions.
Status vocabularies, transition ranks and reconciliation reason codes.
"""

from enum import Enum


class PaymentStatus(str, Enum):
    """
    Status of a single payment attempt.
    Ranks only ever increase; see `app.fsm.machine`.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    REQUIRES_ACTION = "requires_action"
    CANCELED = "canceled"
    FAILED = "failed"
    COMPLETED = "completed"
    REFUNDED = "refunded"

    @property
    def rank(self) -> int:
        """Ordering used to discard out-of-order updates."""
        ranks = {
            self.PENDING: 0,
            self.PROCESSING: 1,
            self.REQUIRES_ACTION: 1,
            self.CANCELED: 2,
            self.FAILED: 2,
            self.COMPLETED: 3,
            self.REFUNDED: 4,
        }
        return ranks[self]

    @property
    def is_terminal(self) -> bool:
        """No automatic transition leaves a terminal status."""
        return self in (
            self.COMPLETED,
            self.FAILED,
            self.CANCELED,
            self.REFUNDED,
        )


class PaymentMethod(str, Enum):
    """How the buyer pays."""

    CARD = "card"
    CASH = "cash"


class PaymentGateway(str, Enum):
    """Backend that processed a payment."""

    STRIPE = "stripe"
    MOCK = "mock"
    CASH = "cash"

    @property
    def is_cash(self) -> bool:
        return self == self.CASH


class OrderStatus(str, Enum):
    """Fulfillment status of an order."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Role(str, Enum):
    """Roles carried by an authenticated principal."""

    BUYER = "buyer"
    SUPPLIER = "supplier"
    ADMIN = "admin"


class GatewayEventKind(str, Enum):
    """
    Gateway webhook events the pipeline understands.
    Values are the Stripe event types.
    """

    SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    CANCELED = "payment_intent.canceled"
    REQUIRES_ACTION = "payment_intent.requires_action"
    PROCESSING = "payment_intent.processing"

    @property
    def target_status(self) -> PaymentStatus:
        """Payment status an event of this kind moves towards."""
        targets = {
            self.SUCCEEDED: PaymentStatus.COMPLETED,
            self.PAYMENT_FAILED: PaymentStatus.FAILED,
            self.CANCELED: PaymentStatus.CANCELED,
            self.REQUIRES_ACTION: PaymentStatus.REQUIRES_ACTION,
            self.PROCESSING: PaymentStatus.PROCESSING,
        }
        return targets[self]


class ReasonCode(str, Enum):
    """Outcome of validating an (order, payment) pair."""

    VALID = "valid"
    INVALID_METHOD = "invalid_method"
    MISSING_PAYMENT = "missing_payment"
    FAILED = "failed"
    CANCELED = "canceled"
    STATUS_MISMATCH = "status_mismatch"
    PAID_WITHOUT_PAYMENT = "paid_without_payment"
    EXPIRED_PENDING = "expired_pending"
    METHOD_MISMATCH = "method_mismatch"

    @property
    def description(self) -> str:
        """Human readable reason shown to admins."""
        descriptions = {
            self.VALID: "Payment is consistent",
            self.INVALID_METHOD: "Invalid payment method",
            self.MISSING_PAYMENT: "Missing payment record for card payment",
            self.FAILED: "Payment failed",
            self.CANCELED: "Payment canceled",
            self.STATUS_MISMATCH: "Payment status mismatch",
            self.PAID_WITHOUT_PAYMENT: "Order marked as paid but no successful payment found",
            self.EXPIRED_PENDING: "Payment pending for too long",
            self.METHOD_MISMATCH: "Payment method mismatch",
        }
        return descriptions[self]


# Gateway intent status -> internal payment status (client-side confirmation)
INTENT_STATUS_MAP = {
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.REQUIRES_ACTION,
    "processing": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.PROCESSING,
    "succeeded": PaymentStatus.COMPLETED,
    "canceled": PaymentStatus.CANCELED,
}
