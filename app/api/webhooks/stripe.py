"""
Stripe Webhook Handler.
Verifies signatures and applies payment intent events.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from redis.asyncio.client import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_gateway
from app.database import get_db
from app.redis import get_redis
from app.schemas.payments import WebhookAck
from app.services.gateway import GatewayClient
from app.services.webhook_service import WebhookService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/stripe/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
    redis: Optional[Redis] = Depends(get_redis),
):
    """
    Handle Stripe webhook events.

    Key events:
    - payment_intent.succeeded: payment captured
    - payment_intent.payment_failed / canceled: attempt ended
    - payment_intent.requires_action / processing: still in flight

    Anything that is not a signature or store failure is acknowledged with
    200 so the gateway stops retrying.
    """
    # Raw body is required for signature verification
    body = await request.body()

    service = WebhookService(db, gateway, redis=redis)
    result = await service.ingest(body, stripe_signature)
    return WebhookAck(outcome=result.outcome)
