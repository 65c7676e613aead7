"""
Tests for bearer credential resolution.

Tests cover:
- Each rejection gate (no token, revoked, invalid/expired, deleted user)
- Revocation lifecycle and purge of expired markers
- Optional resolution for anonymous callers
- Role thresholds on whole endpoints
"""

import logging
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from auth.dependencies import authenticate_token, get_optional_principal
from auth.revocation import is_token_revoked, purge_expired_markers, revoke_token
from auth.security import create_access_token, token_digest, token_expiry, verify_token
from errors import Unauthenticated
from time_utils import utc_now
from conftest import create_auth_token

logger = logging.getLogger(__name__)


def _error(response):
    return response.json()["error"]


# ============== Gates ==============


def test_missing_token_is_rejected(client: TestClient):
    response = client.get("/api/auth/profile")
    assert response.status_code == 401, f"Expected 401, got {response.status_code}: {response.json()}"
    assert _error(response)["code"] == "NO_TOKEN"
    assert response.headers.get("www-authenticate") == "Bearer"
    logger.info("✓ Missing token rejected with NO_TOKEN")


def test_non_bearer_scheme_is_treated_as_missing(client: TestClient, sales_user: models.User):
    token = create_auth_token(sales_user)
    response = client.get("/api/auth/profile", headers={"Authorization": f"Basic {token}"})
    assert response.status_code == 401
    assert _error(response)["code"] == "NO_TOKEN"


def test_garbage_token_is_invalid(client: TestClient):
    response = client.get("/api/auth/profile", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert _error(response)["code"] == "INVALID_TOKEN"


def test_expired_token_is_invalid(client: TestClient, sales_user: models.User):
    token = create_auth_token(sales_user, expires_delta=timedelta(minutes=-5))
    response = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert _error(response)["code"] == "INVALID_TOKEN"
    logger.info("✓ Expired token rejected")


def test_token_with_non_numeric_subject_is_invalid(client: TestClient):
    token = create_access_token({"sub": "not-a-number", "role": "admin"})
    response = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert _error(response)["code"] == "INVALID_TOKEN"


def test_deleted_user_token_does_not_resolve(client: TestClient, test_db: Session, sales_user: models.User):
    """A still-valid, non-revoked token of a deleted user is rejected."""
    token = create_auth_token(sales_user)
    test_db.delete(sales_user)
    test_db.commit()

    response = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert _error(response)["code"] == "USER_NOT_FOUND"
    logger.info("✓ Deleted user's token rejected")


def test_revoked_token_is_rejected_even_though_signature_is_valid(
    client: TestClient, test_db: Session, sales_user: models.User
):
    token = create_auth_token(sales_user)
    assert verify_token(token) is not None

    revoke_token(test_db, token)

    response = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert _error(response)["code"] == "TOKEN_BLACKLISTED"
    logger.info("✓ Revoked token rejected before signature check")


def test_revocation_is_checked_before_expiry(test_db: Session, sales_user: models.User):
    """Gate order: a revoked token reports TOKEN_BLACKLISTED even once expired."""
    token = create_auth_token(sales_user, expires_delta=timedelta(seconds=-1))
    revoke_token(test_db, token, expires_at=utc_now() + timedelta(minutes=5))

    with pytest.raises(Unauthenticated) as exc_info:
        authenticate_token(token, test_db)
    assert exc_info.value.code == "TOKEN_BLACKLISTED"


def test_profile_with_valid_token(client: TestClient, sales_user: models.User):
    token = create_auth_token(sales_user)
    response = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["user"]["username"] == "sales_user"
    assert "password_hash" not in body["data"]["user"]


def test_role_is_read_from_store_not_token(client: TestClient, test_db: Session, sales_user: models.User):
    """A demoted user's old token carries the old role, but the stored role wins."""
    sales_user.role = "manager"
    test_db.commit()
    token = create_auth_token(sales_user)

    sales_user.role = "user"
    test_db.commit()

    response = client.get("/api/auth/users", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 403


# ============== Revocation store ==============


def test_revocation_stores_digest_not_token(test_db: Session, sales_user: models.User):
    token = create_auth_token(sales_user)
    marker = revoke_token(test_db, token)

    assert marker.token_hash == token_digest(token)
    assert token not in marker.token_hash
    assert is_token_revoked(test_db, token)
    assert not is_token_revoked(test_db, create_auth_token(sales_user))


def test_revoking_twice_is_idempotent(test_db: Session, sales_user: models.User):
    token = create_auth_token(sales_user)
    first = revoke_token(test_db, token)
    second = revoke_token(test_db, token)
    assert first.id == second.id
    assert test_db.query(models.RevokedToken).count() == 1


def test_marker_expires_with_token(test_db: Session, sales_user: models.User):
    token = create_auth_token(sales_user, expires_delta=timedelta(minutes=30))
    marker = revoke_token(test_db, token)
    expected = token_expiry(token)
    assert abs((marker.expires_at.replace(tzinfo=None) - expected.replace(tzinfo=None)).total_seconds()) < 1


def test_expired_markers_are_purged(test_db: Session, sales_user: models.User):
    stale = create_auth_token(sales_user)
    fresh = create_auth_token(sales_user)
    test_db.add(models.RevokedToken(token_hash=token_digest(stale), expires_at=utc_now() - timedelta(hours=1)))
    test_db.commit()

    revoke_token(test_db, fresh)

    assert not is_token_revoked(test_db, stale)
    assert is_token_revoked(test_db, fresh)
    assert purge_expired_markers(test_db) == 0


def test_lapsed_marker_is_ignored_before_purge(test_db: Session, sales_user: models.User):
    """A marker past its expiry no longer counts, even while still stored."""
    token = create_auth_token(sales_user)
    test_db.add(models.RevokedToken(token_hash=token_digest(token), expires_at=utc_now() - timedelta(minutes=1)))
    test_db.commit()

    assert test_db.query(models.RevokedToken).count() == 1
    assert not is_token_revoked(test_db, token)
    assert authenticate_token(token, test_db).id == sales_user.id


# ============== Optional resolution ==============


def test_optional_principal_without_token(test_db: Session):
    assert get_optional_principal(token=None, db=test_db) is None


def test_optional_principal_with_revoked_token(test_db: Session, sales_user: models.User):
    token = create_auth_token(sales_user)
    revoke_token(test_db, token)
    assert get_optional_principal(token=token, db=test_db) is None


def test_optional_principal_with_valid_token(test_db: Session, sales_manager: models.User):
    principal = get_optional_principal(token=create_auth_token(sales_manager), db=test_db)
    assert principal is not None
    assert principal.id == sales_manager.id
    assert principal.role == "manager"
    assert principal.team == "Sales"


# ============== Role thresholds ==============


@pytest.mark.parametrize("fixture_name,expected", [
    ("sales_user", 403),
    ("sales_manager", 200),
    ("admin_user", 200),
])
def test_user_listing_requires_manager(client: TestClient, request, fixture_name, expected):
    user = request.getfixturevalue(fixture_name)
    response = client.get("/api/auth/users", headers={"Authorization": f"Bearer {create_auth_token(user)}"})
    assert response.status_code == expected, response.json()
    if expected == 403:
        assert _error(response)["message"] == "Access denied. Required role: manager"
