"""
Order Service - checkout and order reads.
"""

import uuid
import logging
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import Principal
from app.errors import Forbidden, OrderNotFound, ValidationError
from app.fsm.states import OrderStatus
from app.models.order import Order
from app.schemas.orders import CreateOrderRequest

logger = logging.getLogger(__name__)


class OrderService:
    """Service for creating and reading orders."""

    # Total may exceed the items price by shipping/tax up to this much
    MAX_TOTAL_DRIFT = Decimal("100")

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_order(self, request: CreateOrderRequest, requester: Principal) -> Order:
        """
        Create an order from checkout.

        Prices are fixed here and never change afterwards.
        """
        items_price = request.items_price
        if items_price is None:
            items_price = sum((item.price * item.qty for item in request.order_items), Decimal("0"))

        total_price = request.total_price
        if abs(total_price - items_price) > self.MAX_TOTAL_DRIFT:
            raise ValidationError(
                f"Price mismatch detected - Total: {total_price}, Items: {items_price}"
            )

        order = Order(
            id=uuid.uuid4(),
            user_id=requester.id,
            order_items=[
                {
                    "product": item.product,
                    "qty": item.qty,
                    "price": str(item.price),
                    "size": item.size,
                }
                for item in request.order_items
            ],
            shipping_address=request.shipping_address.model_dump(),
            items_price=items_price,
            shipping_price=max(total_price - items_price, Decimal("0")),
            total_price=total_price,
            payment_method=request.payment_method.value,
            status=OrderStatus.PENDING.value,
            is_paid=False,
            payment_timestamps={},
        )
        self.db.add(order)
        await self.db.commit()

        logger.info(f"Order created: {order.id} total={total_price}", extra={"order_id": order.id})
        return order

    async def get_order(self, order_id: str, requester: Principal) -> Order:
        """Owner or admin only."""
        try:
            order_uuid = uuid.UUID(str(order_id))
        except ValueError:
            raise OrderNotFound(f"Order {order_id} not found")

        order = await self.db.get(Order, order_uuid)
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        if not requester.can_access(order.user_id):
            raise Forbidden("Not authorized to view this order")
        return order
