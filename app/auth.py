"""
Authenticated principal.

Tokens are issued by the user service; this side only decodes them.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError

from app.config import settings
from app.errors import Unauthorized
from app.fsm.states import Role

ALGO = "HS256"


@dataclass(frozen=True)
class Principal:
    id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def can_access(self, owner_id: str) -> bool:
        """Owner or admin."""
        return self.is_admin or str(owner_id) == str(self.id)


def create_access_token(user_id: str, role: Role, expires_minutes: int = 30) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": str(user_id), "role": role.value, "exp": exp}
    return jwt.encode(payload, settings.secret_key, algorithm=ALGO)


def decode_principal(token: Optional[str]) -> Principal:
    if not token:
        raise Unauthorized("Not authorized, no token")
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGO])
    except JWTError as e:
        raise Unauthorized("Not authorized, token failed") from e

    user_id = payload.get("sub")
    try:
        role = Role(payload.get("role", Role.BUYER.value))
    except ValueError as e:
        raise Unauthorized("Unknown role in token") from e
    if not user_id:
        raise Unauthorized("Not authorized, token failed")
    return Principal(id=str(user_id), role=role)
