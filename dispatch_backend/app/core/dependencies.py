"""
Authentication dependencies for FastAPI.

This module provides dependencies for protecting routes with JWT
authentication and role checks.
"""

from typing import List
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from dispatch_backend.app.core.security import SessionContext, decode_access_token, session_from_claims
from dispatch_backend.app.models.enums import UserRole

# HTTP Bearer security scheme
security = HTTPBearer()


async def get_session_context(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> SessionContext:
    """
    FastAPI dependency for JWT authentication.

    Raises:
        HTTPException: 401 if the token is invalid, expired or lacks claims
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    session = session_from_claims(payload)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return session


def require_role(allowed_roles: List[UserRole]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.get("/driver/offer")
        async def get_offer(session: SessionContext = Depends(require_role([UserRole.DRIVER]))):
            ...

    Raises:
        HTTPException 403 if user role is not in allowed_roles
    """
    async def role_checker(session: SessionContext = Depends(get_session_context)) -> SessionContext:
        if session.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {', '.join([r.value for r in allowed_roles])}"
            )
        return session

    return role_checker


def get_engine(request: Request):
    """The DispatchEngine built in the application lifespan."""
    return request.app.state.dispatch_engine
