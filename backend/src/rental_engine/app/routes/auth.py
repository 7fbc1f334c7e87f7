"""Current-user dependency.

Identity is owned by the auth service; this engine only verifies the bearer
token it issued and reads the subject and role claims.
"""

import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt

from rental_engine.app.config import get_settings
from rental_engine.domain.enums import BookingActor, UserRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: UserRole


def decode_token(token: str) -> dict | None:
    """Decode and validate a JWT token. Returns payload or None."""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user_dep(request: Request) -> CurrentUser:
    """Dependency: extract current user from Bearer token."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid token",
        )
    payload = decode_token(auth_header.removeprefix("Bearer "))
    if not payload or "sub" not in payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    try:
        role = UserRole(payload.get("role", UserRole.GUEST.value))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unknown role",
        )
    return CurrentUser(id=str(payload["sub"]), role=role)


def require_role(*roles: UserRole):
    """Factory: dependency that checks user has one of the required roles."""

    async def checker(user: CurrentUser = Depends(get_current_user_dep)):
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return user

    return checker


def actor_for(user: CurrentUser, booking) -> BookingActor:
    """Which side of *booking* the user acts as."""
    if user.role == UserRole.ADMIN:
        return BookingActor.ADMIN
    if user.id == booking.host_id:
        return BookingActor.HOST
    return BookingActor.GUEST
