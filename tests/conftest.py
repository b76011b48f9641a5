"""
Pytest configuration and fixtures.
"""

import sys
import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator

# Settings are read at import time
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT_GATEWAY", "mock")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("APP_ENV", "development")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Add app to path
sys.path.append(os.getcwd())

from app.auth import Principal
from app.database import Base
from app.fsm.states import OrderStatus, PaymentGateway, PaymentMethod, PaymentStatus, Role
from app.models import Order, Payment
from app.services.gateway import MockGateway

# Use in-memory SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

BUYER_ID = "buyer-1"
OTHER_BUYER_ID = "buyer-2"
ADMIN_ID = "admin-1"


@pytest_asyncio.fixture
async def test_engine():
    """Create a fresh in-memory database for each test."""
    engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for a test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def gateway() -> MockGateway:
    return MockGateway(webhook_secret="whsec_test")


@pytest.fixture
def buyer() -> Principal:
    return Principal(id=BUYER_ID, role=Role.BUYER)


@pytest.fixture
def other_buyer() -> Principal:
    return Principal(id=OTHER_BUYER_ID, role=Role.BUYER)


@pytest.fixture
def admin() -> Principal:
    return Principal(id=ADMIN_ID, role=Role.ADMIN)


def make_order(
    user_id: str = BUYER_ID,
    total: str = "1000.00",
    method: PaymentMethod = PaymentMethod.CARD,
    **fields,
) -> Order:
    values = dict(
        id=uuid.uuid4(),
        user_id=user_id,
        order_items=[{"product": "tote-01", "qty": 1, "price": total, "size": None}],
        shipping_address={"address": "1 Market St", "city": "Pune"},
        items_price=Decimal(total),
        shipping_price=Decimal("0"),
        total_price=Decimal(total),
        payment_method=method.value,
        is_paid=False,
        status=OrderStatus.PENDING.value,
        payment_timestamps={},
        is_delivered=False,
        created_at=datetime.now(timezone.utc),
    )
    values.update(fields)
    return Order(**values)


def make_payment(
    order: Order,
    status: PaymentStatus = PaymentStatus.PENDING,
    method: PaymentMethod = PaymentMethod.CARD,
    gateway: PaymentGateway = PaymentGateway.MOCK,
    **fields,
) -> Payment:
    values = dict(
        id=uuid.uuid4(),
        order_id=order.id,
        user_id=order.user_id,
        amount=Decimal(order.total_price),
        currency="inr",
        method=method.value,
        gateway=gateway.value,
        transaction_id=f"pi_test_{uuid.uuid4().hex[:12]}",
        status=status.value,
        gateway_response=[],
        created_at=datetime.now(timezone.utc),
    )
    values.update(fields)
    return Payment(**values)


@pytest_asyncio.fixture
async def order(db) -> Order:
    """A 1000.00 card order owned by the default buyer."""
    order = make_order()
    db.add(order)
    await db.commit()
    return order


@pytest.fixture
def order_factory():
    return make_order


@pytest.fixture
def payment_factory():
    return make_payment
