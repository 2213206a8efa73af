from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt
from fastapi import Depends, HTTPException, Request

from factoring.core.config import settings
from factoring.models.user import UserRole


@dataclass(frozen=True)
class Actor:
    """The authenticated caller: who they are and the role they act in."""

    user_id: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def create_access_token(user_id: str, role: UserRole, ttl_minutes: int | None = None) -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": user_id,
        "role": role.value,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(minutes=ttl_minutes or settings.ACCESS_TOKEN_TTL_MINUTES),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> Actor:
    """Validate an access token and return its actor.

    Raises jwt.ExpiredSignatureError or jwt.InvalidTokenError on failure.
    """
    payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    if payload.get("type") != "access":
        raise jwt.InvalidTokenError("Invalid token type")
    return Actor(user_id=str(payload["sub"]), role=UserRole(payload["role"]))


def get_current_actor(request: Request) -> Actor:
    """Resolve the actor from the Bearer token in the Authorization header."""
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Authentication required")

    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = auth_header[7:]
    if not token:
        raise HTTPException(status_code=401, detail="Access token is required")

    try:
        return decode_access_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Access token has expired") from None
    except (jwt.InvalidTokenError, KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid access token") from None


def require_roles(*roles: UserRole) -> Callable[..., Actor]:
    """Dependency factory allowing only the given roles through."""

    def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(
                status_code=403,
                detail={
                    "code": "not_authorized",
                    "message": "Your role is not permitted to perform this action",
                    "details": {
                        "role": actor.role.value,
                        "allowed_roles": [r.value for r in roles],
                    },
                },
            )
        return actor

    return dependency
