"""
Revoked-token list.

A revoked token stays revoked until its own expiry, after which the marker
is irrelevant (the token no longer verifies) and may be purged. There is no
way to un-revoke a token.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import RevokedToken
from auth.security import token_digest, token_expiry
from time_utils import utc_now

logger = logging.getLogger(__name__)


def is_token_revoked(db: Session, token: str) -> bool:
    """Membership check against the revoked-token list, ignoring lapsed markers."""
    found = (
        db.query(RevokedToken.id)
        .filter(
            RevokedToken.token_hash == token_digest(token),
            RevokedToken.expires_at >= utc_now(),
        )
        .first()
    )
    return found is not None


def revoke_token(db: Session, token: str, expires_at: Optional[datetime] = None) -> RevokedToken:
    """
    Add a token to the revoked list until its natural expiry.

    Args:
        db: Database session
        token: Raw bearer token
        expires_at: Override for the marker expiry (defaults to the token's exp claim)

    Raises:
        ValueError: If the token carries no readable expiry
    """
    expires_at = expires_at or token_expiry(token)
    if expires_at is None:
        raise ValueError("Token has no expiry claim")

    digest = token_digest(token)
    marker = RevokedToken(token_hash=digest, expires_at=expires_at)
    db.add(marker)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent logout with the same token already wrote the marker
        db.rollback()
        logger.info("Token was already revoked")
        marker = db.query(RevokedToken).filter(RevokedToken.token_hash == digest).one()
    else:
        db.refresh(marker)
        logger.debug(f"Token revoked until {expires_at}")

    purge_expired_markers(db)
    return marker


def purge_expired_markers(db: Session) -> int:
    """Delete markers whose token has expired on its own. Returns rows removed."""
    removed = (
        db.query(RevokedToken)
        .filter(RevokedToken.expires_at < utc_now())
        .delete(synchronize_session=False)
    )
    if removed:
        db.commit()
        logger.debug(f"Purged {removed} expired revocation markers")
    return removed
