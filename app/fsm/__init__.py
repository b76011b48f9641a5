"""FSM package for payment state management."""

from app.fsm.states import PaymentStatus, PaymentMethod, PaymentGateway, OrderStatus, ReasonCode

__all__ = ["PaymentStatus", "PaymentMethod", "PaymentGateway", "OrderStatus", "ReasonCode"]
