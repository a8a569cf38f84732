from datetime import timedelta
from typing import Optional

import jwt
from fastapi import Depends, Request
from pydantic import BaseModel

from .config import settings
from .database import utcnow
from .errors import Forbidden, Unauthorized
from .models import Role


class Principal(BaseModel):
    id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin


def issue_token(user_id: int, role: Role, ttl: timedelta = timedelta(hours=12)) -> str:
    """Mint a bearer token for a user; used by tooling and tests."""
    payload = {"id": user_id, "role": Role(role).value, "exp": utcnow() + ttl}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Principal:
    try:
        data = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired. Please login again.")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token.")
    try:
        return Principal(id=int(data["id"]), role=data["role"])
    except (KeyError, TypeError, ValueError):
        raise Unauthorized("Invalid token.")


def get_principal(request: Request) -> Principal:
    header: Optional[str] = request.headers.get("authorization")
    if not header or not header.startswith("Bearer "):
        raise Unauthorized("Access denied. No token provided.")
    return decode_token(header.split(" ", 1)[1].strip())


def require_role(*roles: Role):
    def guard(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            raise Forbidden("Access denied. Insufficient permissions.")
        return principal

    return guard
