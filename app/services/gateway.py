"""
Payment gateway clients.

`GatewayClient` is the interface the lifecycle controller and the webhook
pipeline depend on. Instances are built once at startup (`build_gateway`)
and injected, so tests can swap in `MockGateway`.
"""

import asyncio
import functools
import hashlib
import hmac
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Mapping, Optional

import stripe

from app.config import Settings
from app.errors import GatewayError, InvalidSignature, PaymentNotFound
from app.fsm.states import GatewayEventKind, PaymentGateway
from app.services.cards import (
    clean_card_number,
    detect_card_brand,
    mask_card_number,
    validate_card,
)

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount to the gateway's smallest currency unit."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: Optional[int]) -> Decimal:
    return (Decimal(amount or 0) / 100).quantize(Decimal("0.01"))


def as_payload(obj: Any) -> Dict[str, Any]:
    """
    Plain-dict view of a gateway object.

    Stripe SDK objects are not dicts (`.get` raises), so they are flattened
    recursively with `to_dict()` before any parsing.
    """
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict(recursive=True)
    return dict(obj)


def _from_epoch(value: Optional[int]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


@dataclass
class CardSummary:
    last4: str
    brand: Optional[str] = None
    expiry: Optional[str] = None


@dataclass
class GatewayIntent:
    """Gateway-side state of a payment intent."""

    id: str
    amount: Decimal
    currency: str
    status: str
    created: datetime
    client_secret: Optional[str] = None
    order_ref: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    card: Optional[CardSummary] = None

    def snapshot(self) -> Dict[str, Any]:
        """Compact diagnostic record for the payment audit trail."""
        return {
            "id": self.id,
            "status": self.status,
            "amount": str(self.amount),
            "currency": self.currency,
            "failure_code": self.failure_code,
            "failure_message": self.failure_message,
            "update_time": datetime.now(timezone.utc).isoformat(),
        }


@dataclass
class GatewayEvent:
    """A verified webhook event."""

    id: str
    type: str
    intent: GatewayIntent
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def kind(self) -> Optional[GatewayEventKind]:
        try:
            return GatewayEventKind(self.type)
        except ValueError:
            return None

    @property
    def transaction_id(self) -> str:
        return self.intent.id

    @property
    def order_ref(self) -> Optional[str]:
        return self.intent.order_ref


@dataclass
class RefundResult:
    id: str
    amount: Decimal
    status: str


def intent_from_payload(data: Mapping[str, Any]) -> GatewayIntent:
    """Build a GatewayIntent from a Stripe-shaped payment_intent object."""
    data = as_payload(data)
    metadata = data.get("metadata") or {}
    last_error = data.get("last_payment_error") or {}

    card = None
    card_data = (last_error.get("payment_method") or {}).get("card")
    if not card_data:
        card_data = (data.get("payment_method_details") or {}).get("card")
    if card_data and card_data.get("last4"):
        expiry = None
        if card_data.get("exp_month") and card_data.get("exp_year"):
            expiry = f"{int(card_data['exp_month']):02d}/{int(card_data['exp_year']) % 100:02d}"
        card = CardSummary(
            last4=card_data["last4"],
            brand=card_data.get("brand"),
            expiry=expiry,
        )

    return GatewayIntent(
        id=data["id"],
        amount=from_minor_units(data.get("amount")),
        currency=data.get("currency") or "",
        status=data.get("status") or "",
        created=_from_epoch(data.get("created")),
        client_secret=data.get("client_secret"),
        order_ref=metadata.get("order_id"),
        failure_code=last_error.get("code") or last_error.get("decline_code"),
        failure_message=last_error.get("message"),
        card=card,
    )


def event_from_payload(payload: Mapping[str, Any]) -> GatewayEvent:
    """Build a GatewayEvent from a Stripe-shaped event envelope."""
    try:
        payload = as_payload(payload)
        obj = payload["data"]["object"]
        return GatewayEvent(
            id=payload["id"],
            type=payload["type"],
            intent=intent_from_payload(obj),
            raw=payload,
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise InvalidSignature(f"Malformed webhook payload: {e}") from e


class GatewayClient(ABC):
    """Interface to an external payment gateway."""

    name: str = ""

    @abstractmethod
    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        order_ref: str,
        description: str = "",
    ) -> GatewayIntent:
        ...

    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        ...

    @abstractmethod
    def construct_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        """Verify the signature and parse the event. Raises InvalidSignature."""

    @abstractmethod
    async def refund(
        self,
        intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        """Refund `amount` (default: all) of a settled intent."""


class StripeGateway(GatewayClient):
    """Stripe PaymentIntents via the official SDK, bounded by a timeout."""

    name = PaymentGateway.STRIPE.value

    def __init__(self, api_key: str, webhook_secret: str, timeout: float = 10.0):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout

    async def _call(self, fn, **params):
        """Run a blocking SDK call in a worker thread with a deadline."""
        if not self.api_key:
            raise GatewayError("Stripe is not configured (missing STRIPE_SECRET_KEY)")
        call = functools.partial(fn, api_key=self.api_key, **params)
        operation = getattr(fn, "__qualname__", "stripe call")
        try:
            return await asyncio.wait_for(asyncio.to_thread(call), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Stripe {operation} timed out after {self.timeout}s")
            raise GatewayError("Payment gateway timed out") from e
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                raise PaymentNotFound("Payment intent not found or expired") from e
            raise GatewayError(f"Invalid payment request: {e.user_message or e}") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe error in {operation}: {e}")
            raise GatewayError(f"Payment gateway error: {e.user_message or e}") from e

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        order_ref: str,
        description: str = "",
    ) -> GatewayIntent:
        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=to_minor_units(amount),
            currency=currency,
            description=description or f"Order {order_ref}",
            metadata={"order_id": order_ref},
            automatic_payment_methods={"enabled": True},
        )
        parsed = intent_from_payload(intent)
        logger.info(f"Created Stripe payment intent {parsed.id} for order {order_ref}")
        return parsed

    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        if not intent_id:
            raise GatewayError("Payment Intent ID is required")
        intent = await self._call(stripe.PaymentIntent.retrieve, id=intent_id)
        return intent_from_payload(intent)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        if not signature or not self.webhook_secret:
            raise InvalidSignature("Missing webhook signature or secret")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            raise InvalidSignature("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature("Invalid signature") from e
        return event_from_payload(event)

    async def refund(
        self,
        intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        params: Dict[str, Any] = {"payment_intent": intent_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        if reason:
            # Stripe only accepts its own reason codes; keep ours in metadata
            params["metadata"] = {"reason": reason}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        refund = as_payload(await self._call(stripe.Refund.create, **params))
        return RefundResult(
            id=refund["id"],
            amount=from_minor_units(refund.get("amount")),
            status=refund.get("status") or "",
        )


class MockGateway(GatewayClient):
    """
    In-process gateway for development and tests.

    Intents live in memory. Webhooks use the Stripe event envelope and are
    signed with a hex HMAC-SHA256 of the raw body.
    """

    name = PaymentGateway.MOCK.value

    def __init__(self, webhook_secret: str = "mock_webhook_secret"):
        self.webhook_secret = webhook_secret
        self.intents: Dict[str, GatewayIntent] = {}
        self.refunds: Dict[str, RefundResult] = {}
        self.refund_keys: Dict[str, RefundResult] = {}

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        order_ref: str,
        description: str = "",
    ) -> GatewayIntent:
        intent_id = f"pi_mock_{uuid.uuid4().hex[:24]}"
        intent = GatewayIntent(
            id=intent_id,
            amount=Decimal(amount).quantize(Decimal("0.01")),
            currency=currency,
            status="requires_payment_method",
            created=datetime.now(timezone.utc),
            client_secret=f"{intent_id}_secret_{uuid.uuid4().hex[:9]}",
            order_ref=order_ref,
        )
        self.intents[intent_id] = intent
        return intent

    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        intent = self.intents.get(intent_id)
        if intent is None:
            raise PaymentNotFound("Payment intent not found or expired")
        return intent

    def confirm_card(
        self,
        intent_id: str,
        card_number: str,
        expiry: str,
        cvv: str,
    ) -> GatewayIntent:
        """Simulate client-side card confirmation of an intent."""
        intent = self.intents[intent_id]
        error = validate_card(card_number, expiry, cvv)
        if error:
            logger.info(f"Mock card {mask_card_number(card_number)} declined for {intent_id}: {error}")
            intent.status = "requires_payment_method"
            intent.failure_code = "card_validation_failed"
            intent.failure_message = error
            return intent

        logger.info(f"Mock card {mask_card_number(card_number)} authorized for {intent_id}")
        intent.status = "succeeded"
        intent.failure_code = None
        intent.failure_message = None
        intent.card = CardSummary(
            last4=clean_card_number(card_number)[-4:],
            brand=detect_card_brand(card_number),
            expiry=expiry,
        )
        return intent

    def sign(self, payload: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), payload, hashlib.sha256).hexdigest()

    def build_event(self, event_type: str, intent: GatewayIntent, event_id: Optional[str] = None) -> bytes:
        """Serialize a Stripe-shaped event for `intent` (used by tests and local tooling)."""
        obj: Dict[str, Any] = {
            "id": intent.id,
            "object": "payment_intent",
            "amount": to_minor_units(intent.amount),
            "currency": intent.currency,
            "status": intent.status,
            "created": int(intent.created.timestamp()),
            "metadata": {"order_id": intent.order_ref} if intent.order_ref else {},
        }
        if intent.failure_code or intent.failure_message:
            obj["last_payment_error"] = {
                "code": intent.failure_code,
                "message": intent.failure_message,
            }
        if intent.card:
            month, _, year = (intent.card.expiry or "").partition("/")
            obj["payment_method_details"] = {
                "card": {
                    "last4": intent.card.last4,
                    "brand": intent.card.brand,
                    "exp_month": int(month) if month else None,
                    "exp_year": int(year) if year else None,
                }
            }
        envelope = {
            "id": event_id or f"evt_mock_{uuid.uuid4().hex[:24]}",
            "type": event_type,
            "data": {"object": obj},
        }
        return json.dumps(envelope).encode("utf-8")

    def construct_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        if not signature:
            raise InvalidSignature("Missing webhook signature")
        if not hmac.compare_digest(self.sign(payload), signature):
            raise InvalidSignature("Invalid signature")
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidSignature("Invalid payload") from e
        return event_from_payload(data)

    async def refund(
        self,
        intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        if idempotency_key and idempotency_key in self.refund_keys:
            return self.refund_keys[idempotency_key]
        intent = self.intents.get(intent_id)
        refund = RefundResult(
            id=f"re_mock_{uuid.uuid4().hex[:24]}",
            amount=amount if amount is not None else (intent.amount if intent else Decimal("0")),
            status="succeeded",
        )
        self.refunds[intent_id] = refund
        if idempotency_key:
            self.refund_keys[idempotency_key] = refund
        return refund


def build_gateway(settings: Settings) -> GatewayClient:
    """Construct the configured gateway client."""
    if settings.payment_gateway == "mock":
        logger.warning("Using mock payment gateway")
        return MockGateway(webhook_secret=settings.stripe_webhook_secret or "mock_webhook_secret")
    return StripeGateway(
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout=settings.gateway_timeout_seconds,
    )
