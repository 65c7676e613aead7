"""
Authentication and user management API endpoints.

This module provides REST API endpoints for:
- User registration
- Login/logout (logout revokes the presented token)
- Profile lookup
- User listing, role changes and removal for managers and admins
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

import config
from database import get_db
from errors import Conflict, Forbidden, NotFound, Unauthenticated, success
from models import Task, User
from schemas import AuthResult, LoginRequest, RegisterRequest, RoleUpdate, UserOut
from auth.dependencies import get_bearer_token, get_current_principal, get_current_user, require_manager
from auth.permissions import can_assign_role, can_manage_user
from auth.revocation import revoke_token
from auth.roles import Principal, Role
from auth.scopes import Pagination, user_scope_filter
from auth.security import create_access_token, hash_password, verify_password
from services.cache import CacheService, get_cache, user_profile_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _issue_token(user: User) -> str:
    return create_access_token({"sub": str(user.id), "role": user.role, "email": user.email})


def _auth_payload(user: User, token: str) -> AuthResult:
    return AuthResult(token=token, user=UserOut.model_validate(user))


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(request: RegisterRequest, db: Session = Depends(get_db)):
    """
    Register a new user account.

    Public registration never creates an elevated account: a requested
    ``admin`` or ``manager`` role is silently stored as ``user``.

    Raises:
        Conflict: 400 USER_EXISTS if the email or username is taken
    """
    email = request.email.lower()
    logger.info(f"Registration attempt for email: {email}")

    existing = (
        db.query(User)
        .filter(or_(func.lower(User.email) == email, User.username == request.username))
        .first()
    )
    if existing:
        logger.info(f"Registration failed: user already exists: {email} / {request.username}")
        raise Conflict("User with this email or username already exists", code="USER_EXISTS")

    if request.role is not None and request.role != Role.user:
        logger.warning(
            f"⚠️  Registration for {email} requested role '{request.role.value}', downgraded to 'user'"
        )

    new_user = User(
        username=request.username,
        email=email,
        password_hash=hash_password(request.password),
        role=Role.user.value,
        team=request.team,
        is_email_verified=False,
    )
    db.add(new_user)
    db.commit()
    db.refresh(new_user)

    logger.critical(f"User registered successfully: {new_user.email} (ID: {new_user.id})")
    return success(_auth_payload(new_user, _issue_token(new_user)), message="User registered successfully")


@router.post("/login")
def login(request: LoginRequest, db: Session = Depends(get_db)):
    """
    Login with email or username and password.

    Raises:
        Unauthenticated: 401 INVALID_CREDENTIALS for an unknown identifier or wrong password
    """
    identifier = request.identifier.strip()
    logger.info(f"Login attempt for: {identifier}")

    if "@" in identifier:
        user = db.query(User).filter(func.lower(User.email) == identifier.lower()).first()
    else:
        user = db.query(User).filter(User.username == identifier).first()

    if not user or not verify_password(request.password, user.password_hash):
        logger.info(f"Login failed for: {identifier}")
        raise Unauthenticated("Invalid credentials", code="INVALID_CREDENTIALS")

    token = _issue_token(user)
    logger.critical(f"User logged in: {user.email} (ID: {user.id})")
    return success(_auth_payload(user, token), message="Login successful")


@router.post("/logout")
def logout(
    user: User = Depends(get_current_user),
    token: Optional[str] = Depends(get_bearer_token),
    db: Session = Depends(get_db),
):
    """
    Logout by revoking the presented token until it would have expired anyway.

    Other tokens of the same user stay valid.
    """
    try:
        revoke_token(db, token)
    except ValueError:
        logger.info(f"Token of user {user.id} carries no expiry, cannot revoke")
        raise Unauthenticated("Invalid or expired token", code="INVALID_TOKEN")

    logger.critical(f"User logged out: {user.email} (ID: {user.id})")
    return success({"message": "Logged out successfully"})


@router.get("/profile")
def get_profile(
    user: User = Depends(get_current_user),
    cache: CacheService = Depends(get_cache),
):
    """Get the authenticated user's profile."""
    profile, _ = cache.cached(
        user_profile_key(user.id),
        config.CACHE_TTL_USER_PROFILE,
        lambda: UserOut.model_validate(user).model_dump(mode="json"),
    )
    return success({"user": profile})


# ============== User management ==============

@router.get("/users")
def list_users(
    role: Optional[Role] = Query(None),
    team: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1),
    principal: Principal = Depends(require_manager),
    db: Session = Depends(get_db),
):
    """
    List users visible to the caller (manager or admin).

    Managers only ever see their own team; the ``team`` filter narrows an
    admin's listing and is ANDed with a manager's scope.
    """
    logger.debug(f"User {principal.id} ({principal.role}) listing users: role={role}, team={team}")

    query = db.query(User)
    scope = user_scope_filter(principal)
    if scope is not None:
        query = query.filter(scope)
    if role is not None:
        query = query.filter(User.role == role.value)
    if team:
        query = query.filter(User.team == team)

    pagination = Pagination.build(page=page, limit=limit)
    total = query.count()
    users = (
        query.order_by(User.created_at.desc(), User.id.desc())
        .offset(pagination.offset)
        .limit(pagination.limit)
        .all()
    )

    return success(
        {
            "users": [UserOut.model_validate(u) for u in users],
            "pagination": pagination.metadata(total),
        }
    )


@router.put("/users/{user_id}/role")
def update_user_role(
    user_id: int,
    update: RoleUpdate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    """
    Change a user's role (admin only).

    Raises:
        Forbidden: 403 if the caller may not assign roles, or targets themself (SELF_ROLE_CHANGE)
        NotFound: 404 USER_NOT_FOUND if the target does not exist
    """
    if not can_assign_role(principal, update.role):
        logger.info(f"User {principal.id} ({principal.role}) denied role assignment '{update.role.value}'")
        raise Forbidden("Only admins can change user roles")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFound("User not found", code="USER_NOT_FOUND")

    if user.id == principal.id:
        logger.warning(f"⚠️  Admin {principal.id} attempted to change their own role")
        raise Forbidden("You cannot change your own role", code="SELF_ROLE_CHANGE")

    previous_role = user.role
    user.role = update.role.value
    db.commit()
    db.refresh(user)

    # Visibility of every task list and aggregate depends on the role
    cache.invalidate_user_cache(user.id)
    cache.invalidate_task_caches()

    logger.critical(
        f"Role changed for user {user.id}: '{previous_role}' -> '{user.role}' by admin {principal.id}"
    )
    return success({"message": "User role updated successfully", "user": UserOut.model_validate(user)})


@router.delete("/users/{user_id}")
def delete_user(
    user_id: int,
    principal: Principal = Depends(require_manager),
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    """
    Delete a user (manager or admin).

    Tasks assigned to the deleted user become unassigned; tasks they created
    keep existing without a creator.

    Raises:
        Forbidden: 403 SELF_DELETE for the caller's own account, or 403 if
            ``can_manage_user`` denies the target
        NotFound: 404 USER_NOT_FOUND if the target does not exist
    """
    if user_id == principal.id:
        logger.warning(f"⚠️  User {principal.id} attempted to delete their own account")
        raise Forbidden("You cannot delete your own account", code="SELF_DELETE")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFound("User not found", code="USER_NOT_FOUND")

    if not can_manage_user(principal, user):
        logger.info(f"User {principal.id} ({principal.role}) denied deleting user {user.id} ({user.role})")
        raise Forbidden("You do not have permission to manage this user")

    unassigned = (
        db.query(Task)
        .filter(Task.assigned_to_id == user.id)
        .update({Task.assigned_to_id: None}, synchronize_session=False)
    )
    db.query(Task).filter(Task.created_by_id == user.id).update(
        {Task.created_by_id: None}, synchronize_session=False
    )
    db.delete(user)
    db.commit()

    cache.invalidate_user_cache(user_id)
    cache.invalidate_task_caches()

    logger.critical(
        f"User deleted: {user.email} (ID: {user_id}) by {principal.role} {principal.id}, "
        f"{unassigned} tasks unassigned"
    )
    return success({"message": "User deleted successfully"})
