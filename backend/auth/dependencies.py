"""
FastAPI dependencies for authentication and authorization.

This module provides dependency functions that can be used in route handlers to:
- Resolve the bearer token of the request into a Principal
- Enforce role thresholds on whole endpoints
- Resolve optionally, for endpoints that also serve anonymous callers
"""

import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from database import get_db
from errors import Forbidden, Unauthenticated
from models import User
from auth.revocation import is_token_revoked
from auth.roles import Principal, Role, has_role_at_least
from auth.security import verify_token

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme; absence is reported by us, not by FastAPI
security = HTTPBearer(auto_error=False)


def authenticate_token(token: Optional[str], db: Session) -> User:
    """
    Resolve a raw bearer token to the stored user it identifies.

    Each step is a hard gate, checked in order:
    1. Presence of a token
    2. Token not on the revoked list
    3. Valid signature and unexpired
    4. Referenced user still exists

    Args:
        token: Raw bearer token, or None if the header was missing or malformed
        db: Database session

    Returns:
        The User row the token belongs to

    Raises:
        Unauthenticated: With code NO_TOKEN, TOKEN_BLACKLISTED, INVALID_TOKEN or USER_NOT_FOUND
    """
    if not token:
        logger.info("No authentication credentials provided")
        raise Unauthenticated(
            "Authentication required. Please provide a valid token", code="NO_TOKEN"
        )

    if is_token_revoked(db, token):
        logger.info("Rejected revoked token")
        raise Unauthenticated(
            "Token has been invalidated. Please login again", code="TOKEN_BLACKLISTED"
        )

    payload = verify_token(token)
    if payload is None or payload.get("type", "access") != "access":
        raise Unauthenticated("Invalid or expired token", code="INVALID_TOKEN")

    # Parse user id safely (malformed tokens should be 401, not 500)
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        logger.info(f"Invalid user id format in token: {payload.get('sub')}")
        raise Unauthenticated("Invalid or expired token", code="INVALID_TOKEN")

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        logger.info(f"User not found for id: {user_id}")
        raise Unauthenticated("User not found", code="USER_NOT_FOUND")

    logger.debug(f"Token resolved to user {user.id} ({user.role})")
    return user


async def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    """Extract the raw token from an ``Authorization: Bearer`` header."""
    if credentials and credentials.credentials:
        return credentials.credentials
    return None


def get_current_user(
    request: Request,
    token: Optional[str] = Depends(get_bearer_token),
    db: Session = Depends(get_db),
) -> User:
    """
    Authenticate the request and return the stored user.

    The resolved Principal is also attached to ``request.state.principal``.

    Example:
        @router.get("/api/auth/profile")
        def profile(user: User = Depends(get_current_user)):
            return {"id": user.id}
    """
    user = authenticate_token(token, db)
    request.state.principal = Principal.from_user(user)
    return user


def get_current_principal(user: User = Depends(get_current_user)) -> Principal:
    """Immutable principal for policy checks, built fresh from the user row."""
    return Principal.from_user(user)


def get_optional_principal(
    token: Optional[str] = Depends(get_bearer_token),
    db: Session = Depends(get_db),
) -> Optional[Principal]:
    """
    Resolve the principal if the request is authenticated, or None if not.

    Performs the same gates as ``get_current_user`` but any failure yields
    an anonymous caller instead of a 401.
    """
    try:
        return Principal.from_user(authenticate_token(token, db))
    except Unauthenticated:
        logger.debug("Optional authentication failed, continuing anonymously")
        return None


def require_role(required_role: str):
    """
    Create a dependency that requires at least ``required_role``.

    Example:
        @router.delete("/api/auth/users/{user_id}")
        def delete_user(principal: Principal = Depends(require_role("manager"))):
            pass
    """
    logger.debug(f"Creating role requirement dependency for role: {required_role}")

    def role_checker(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not has_role_at_least(principal.role, required_role):
            logger.info(
                f"Access denied: user {principal.id} has role '{principal.role}', "
                f"but '{required_role}' is required"
            )
            raise Forbidden(f"Access denied. Required role: {required_role}")
        return principal

    return role_checker


require_manager = require_role(Role.manager.value)
