"""
Role hierarchy and the request principal.

Roles form a total order: admin > manager > user. Every comparison goes
through ``role_level`` so that an unrecognized role string always resolves to
the lowest level instead of failing open.
"""

import enum
from dataclasses import dataclass
from typing import Any, Optional


class Role(str, enum.Enum):
    admin = "admin"
    manager = "manager"
    user = "user"


ROLE_LEVELS = {
    Role.user.value: 1,
    Role.manager.value: 2,
    Role.admin.value: 3,
}
LOWEST_LEVEL = ROLE_LEVELS[Role.user.value]


def role_level(role: Any) -> int:
    """
    Get the numeric level for a role.

    Args:
        role: Role name (case-insensitive) or Role member

    Returns:
        3 for admin, 2 for manager, 1 for user or anything unrecognized
    """
    if isinstance(role, Role):
        role = role.value
    if not isinstance(role, str):
        return LOWEST_LEVEL
    return ROLE_LEVELS.get(role.strip().lower(), LOWEST_LEVEL)


def has_role_at_least(role: Any, threshold: Any) -> bool:
    """Check if ``role`` is higher than or equal to ``threshold``."""
    return role_level(role) >= role_level(threshold)


def normalize_role(role: Any) -> str:
    """Map any role value onto the known vocabulary, defaulting to user."""
    level = role_level(role)
    for name, value in ROLE_LEVELS.items():
        if value == level:
            return name
    return Role.user.value


@dataclass(frozen=True)
class Principal:
    """
    The authenticated actor for one request.

    Built fresh from the stored user record on every request, so a role
    change or deletion takes effect on the very next call.
    """

    id: int
    role: str
    team: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_user(cls, user: Any) -> "Principal":
        team = getattr(user, "team", None)
        return cls(
            id=user.id,
            role=normalize_role(getattr(user, "role", None)),
            team=team or None,
            username=getattr(user, "username", None),
            email=getattr(user, "email", None),
        )

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin.value

    @property
    def is_manager(self) -> bool:
        return self.role == Role.manager.value
