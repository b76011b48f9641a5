"""Services package."""

from app.services.gateway import GatewayClient, MockGateway, StripeGateway, build_gateway
from app.services.payment_service import PaymentService
from app.services.order_service import OrderService
from app.services.webhook_service import WebhookService
from app.services.reconciliation import ReconciliationService, validate_order_payment

__all__ = [
    "GatewayClient",
    "MockGateway",
    "StripeGateway",
    "build_gateway",
    "PaymentService",
    "OrderService",
    "WebhookService",
    "ReconciliationService",
    "validate_order_payment",
]
