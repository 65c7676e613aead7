"""
Security utilities for password hashing and JWT access tokens.

This module provides cryptographic functions for:
- Password hashing using Argon2id (memory-hard, GPU-resistant)
- Password strength validation
- JWT access token creation, verification and expiry inspection
"""

import hashlib
import logging
import os
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from config import ACCESS_TOKEN_EXPIRE_MINUTES, is_production_like

logger = logging.getLogger(__name__)


# Password hashing configuration using Argon2id
pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

# At least one lowercase, uppercase, digit and special character, 8+ chars
PASSWORD_STRENGTH_PATTERN = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$"
)

# JWT configuration
# Load SECRET_KEY from environment variable (REQUIRED for security)
SECRET_KEY = os.environ.get("JWT_SECRET_KEY")
if not SECRET_KEY:
    if is_production_like():
        raise ValueError(
            "JWT_SECRET_KEY environment variable is required in production. "
            "Generate a secure key with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
        )
    else:
        # Development fallback with warning
        SECRET_KEY = "dev-insecure-key-" + secrets.token_urlsafe(32)
        logger.warning(
            "⚠️  JWT_SECRET_KEY not set! Using temporary development key. "
            "This is INSECURE for production. Set JWT_SECRET_KEY environment variable."
        )

ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")

# Validate JWT algorithm
SUPPORTED_ALGORITHMS = ["HS256", "HS384", "HS512"]
if ALGORITHM not in SUPPORTED_ALGORITHMS:
    logger.warning(
        f"⚠️  Unsupported JWT_ALGORITHM={ALGORITHM}. Using HS256. "
        f"Supported: {', '.join(SUPPORTED_ALGORITHMS)}"
    )
    ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    """
    Hash a password using Argon2id.

    Args:
        password: Plain text password to hash

    Returns:
        Hashed password string

    Example:
        >>> hashed = hash_password("My_secure_passw0rd!")
        >>> verify_password("My_secure_passw0rd!", hashed)
        True
    """
    logger.debug("Hashing password")
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash.

    Returns:
        True if password matches, False otherwise (including malformed hashes)
    """
    logger.debug("Verifying password")
    try:
        is_valid = pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError) as e:
        logger.info(f"Password hash could not be verified: {e}")
        return False
    logger.debug(f"Password verification result: {is_valid}")
    return is_valid


def is_strong_password(password: str) -> bool:
    """Check a password against the strength policy."""
    return bool(PASSWORD_STRENGTH_PATTERN.match(password or ""))


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Each token carries a random ``jti`` so two tokens issued for the same user
    in the same second are still distinct (revoking one leaves the other valid).

    Args:
        data: Payload data to encode in the token (sub, role, email)
        expires_delta: Optional custom expiration time (negative values yield an expired token)

    Returns:
        Encoded JWT token string

    Example:
        >>> token = create_access_token({"sub": "1", "role": "admin"})
    """
    to_encode = data.copy()

    if expires_delta is not None:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire, "type": "access", "jti": secrets.token_urlsafe(16)})

    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    logger.debug(f"Access token created for sub {data.get('sub')}, expires at: {expire}")
    return encoded_jwt


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Verify signature and expiry of a JWT token and decode it.

    Returns:
        Decoded token payload if valid, None otherwise

    Example:
        >>> payload = verify_token(token)
        >>> if payload:
        ...     user_id = payload.get("sub")
    """
    logger.debug("Verifying JWT token")
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        logger.debug(f"Token verified successfully for user: {payload.get('sub')}")
        return payload
    except JWTError as e:
        logger.info(f"JWT verification failed: {str(e)}")
        return None


def token_expiry(token: str) -> Optional[datetime]:
    """
    Read the ``exp`` claim of a token without verifying it.

    Used to bound the lifetime of a revocation marker.
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.info(f"Could not read token claims: {str(e)}")
        return None
    exp = claims.get("exp")
    if exp is None:
        return None
    try:
        return datetime.fromtimestamp(int(exp), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def token_digest(token: str) -> str:
    """SHA-256 hex digest of a raw token, the form stored in the revocation list."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
