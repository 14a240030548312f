"""
Bearer token handling.

Tokens are issued by the external auth service; this service only verifies
them and turns the claims into an explicit SessionContext that is passed into
every engine call.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from jose import JWTError, jwt
from dispatch_backend.app.core.config import settings
from dispatch_backend.app.models.enums import UserRole


@dataclass(frozen=True)
class SessionContext:
    """Authenticated caller: who they are and in which role."""
    user_id: int
    role: UserRole
    username: Optional[str] = None


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Used by tests and local tooling; production tokens come from the auth service.

    Example payload:
        {
            "sub": "driver_17",
            "user_id": 17,
            "role": "DRIVER",
            "exp": 1234567890
        }
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and validate a JWT access token.

    Returns:
        Decoded payload if signature and expiry are valid, None otherwise
    """
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None


def session_from_claims(payload: Dict[str, Any]) -> Optional[SessionContext]:
    """Build a SessionContext, or None when required claims are missing or malformed."""
    user_id = payload.get("user_id")
    role = payload.get("role")
    if user_id is None or role is None:
        return None
    try:
        return SessionContext(
            user_id=int(user_id),
            role=UserRole(role),
            username=payload.get("sub"),
        )
    except (TypeError, ValueError):
        return None
