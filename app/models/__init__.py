"""Models package for database models."""

from app.models.order import Order
from app.models.payment import Payment

__all__ = [
    "Order",
    "Payment",
]
