from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import Principal, decode_principal
from app.database import get_db
from app.errors import Forbidden
from app.services.gateway import GatewayClient
from app.services.payment_service import PaymentService

bearer = HTTPBearer(auto_error=False)


async def get_current_principal(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Principal:
    """
    Decode the bearer token into a principal.
    Raises Unauthorized (401) when missing or invalid.
    """
    return decode_principal(creds.credentials if creds else None)


async def require_admin(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    if not principal.is_admin:
        raise Forbidden("Not authorized as an admin")
    return principal


def get_gateway(request: Request) -> GatewayClient:
    """The gateway client built at startup."""
    return request.app.state.gateway


async def get_payment_service(
    db: AsyncSession = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
) -> PaymentService:
    return PaymentService(db, gateway)
