"""
Access policy decisions for tasks, users and analytics.

Every function here is pure: it takes a principal and a target (anything
exposing the relevant attributes, e.g. ORM rows or ``Principal``) and returns
a boolean. Nothing here raises for "access denied"; handlers translate a
``False`` into NotFound or Forbidden as appropriate.

The same task predicate serves read, update, delete and assign, and
``auth.scopes.task_scope_filter`` is its bulk-query counterpart.
"""

import logging
from typing import Any, Optional

from auth.roles import Role, normalize_role

logger = logging.getLogger(__name__)

ASSIGNABLE_ROLES = {Role.admin.value, Role.manager.value, Role.user.value}


def _role(subject: Any) -> str:
    return normalize_role(getattr(subject, "role", None))


def _team(subject: Any) -> Optional[str]:
    # Empty strings carry no team authority
    return getattr(subject, "team", None) or None


def is_same_team(first: Any, second: Any) -> bool:
    """Check if two principals share a non-empty team label."""
    first_team = _team(first)
    second_team = _team(second)
    if not first_team or not second_team:
        return False
    return first_team == second_team


def can_access_task(principal: Any, task: Any) -> bool:
    """
    Check if a principal may read, update, delete or assign a task.

    Access sources (in order):
    1. Admin role (unconditional)
    2. Manager whose team label equals the task's team label
    3. Creator or assignee of the task (any role)

    Args:
        principal: Acting principal (id, role, team)
        task: Task with created_by_id, assigned_to_id and team

    Returns:
        True if access is allowed, False otherwise
    """
    role = _role(principal)

    if role == Role.admin.value:
        logger.debug(f"Principal {principal.id} is admin, granting access to task {task.id}")
        return True

    manager_team = _team(principal)
    if role == Role.manager.value and manager_team and _team(task) == manager_team:
        logger.debug(f"Manager {principal.id} shares team '{manager_team}' with task {task.id}")
        return True

    if task.created_by_id == principal.id or task.assigned_to_id == principal.id:
        logger.debug(f"Principal {principal.id} is creator or assignee of task {task.id}")
        return True

    logger.debug(f"Principal {principal.id} ({role}) has no access to task {task.id}")
    return False


def can_assign_task(principal: Any) -> bool:
    """Check if a principal may assign tasks to other principals."""
    return _role(principal) in (Role.admin.value, Role.manager.value)


def can_manage_user(principal: Any, target: Any) -> bool:
    """
    Check if a principal may manage (e.g. remove) another user.

    Admins may manage any other user. Managers may manage plain users that
    share their team label, never other managers or admins. Nobody manages
    themself through this path.
    """
    if principal.id == target.id:
        return False

    role = _role(principal)
    if role == Role.admin.value:
        return True

    if role == Role.manager.value and is_same_team(principal, target):
        return _role(target) == Role.user.value

    return False


def can_assign_role(principal: Any, target_role: Any) -> bool:
    """
    Check if a principal may assign ``target_role`` to someone.

    Only admins assign roles, and only roles from the known vocabulary.
    Self role changes are rejected separately at the mutation site.
    """
    if _role(principal) != Role.admin.value:
        return False
    if isinstance(target_role, Role):
        target_role = target_role.value
    return target_role in ASSIGNABLE_ROLES


def can_view_user_stats(principal: Any, target: Any) -> bool:
    """Self, any admin, or a manager from the target's (non-empty) team."""
    if principal.id == target.id:
        return True
    role = _role(principal)
    if role == Role.admin.value:
        return True
    return role == Role.manager.value and is_same_team(principal, target)


def can_view_team_stats(principal: Any, team: str) -> bool:
    """Admins may view any team; managers only their own; users none."""
    role = _role(principal)
    if role == Role.admin.value:
        return True
    if role == Role.manager.value:
        manager_team = _team(principal)
        return bool(manager_team) and manager_team == team
    return False
