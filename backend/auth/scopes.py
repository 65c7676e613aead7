"""
Query scopes for bulk task and user operations.

``task_scope_filter`` is the set-based form of
``auth.permissions.can_access_task``: for every principal, the rows it
selects are exactly the rows the single-task predicate would allow. Request
filters are always ANDed on top of the scope, never substituted for it.
"""

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import and_, asc, case, desc, false, func, or_
from sqlalchemy.orm import Query, Session

import models
from auth.roles import Role, normalize_role
from config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = ("created_at", "due_date", "priority")
# Clients may also send the camelCase field names
SORT_FIELD_ALIASES = {"createdAt": "created_at", "dueDate": "due_date"}
DEFAULT_SORT_FIELD = "created_at"
DEFAULT_SORT_ORDER = "desc"

_PRIORITY_RANK = case(
    (models.Task.priority == models.TaskPriority.low, 1),
    (models.Task.priority == models.TaskPriority.medium, 2),
    (models.Task.priority == models.TaskPriority.high, 3),
    else_=0,
)


def _creator_or_assignee(principal: Any):
    return or_(
        models.Task.created_by_id == principal.id,
        models.Task.assigned_to_id == principal.id,
    )


def task_scope_filter(principal: Any):
    """
    Build the role-scope predicate for task queries.

    - admin: no restriction (returns None)
    - manager with a team: tasks of that team, plus tasks they created or
      are assigned in any other team
    - manager without a team, user, unknown role: created by or assigned to the principal

    Returns:
        SQLAlchemy boolean clause, or None when the principal sees every task
    """
    role = normalize_role(getattr(principal, "role", None))
    team = getattr(principal, "team", None) or None

    if role == Role.admin.value:
        logger.debug(f"Task scope for admin {principal.id}: all tasks")
        return None

    if role == Role.manager.value:
        if team:
            logger.debug(f"Task scope for manager {principal.id}: team '{team}'")
            return or_(models.Task.team == team, _creator_or_assignee(principal))
        logger.debug(f"Manager {principal.id} has no team, scoping to own tasks")

    return _creator_or_assignee(principal)


def scoped_task_query(db: Session, principal: Any, query: Optional[Query] = None) -> Query:
    """Return a task query with the principal's scope already applied."""
    if query is None:
        query = db.query(models.Task)
    scope = task_scope_filter(principal)
    if scope is not None:
        query = query.filter(scope)
    return query


@dataclass
class TaskFilters:
    """Optional request filters, composed with the scope via AND."""

    statuses: List[str] = field(default_factory=list)
    priorities: List[str] = field(default_factory=list)
    q: Optional[str] = None
    assignee_id: Optional[int] = None
    creator_id: Optional[int] = None
    team: Optional[str] = None
    due_before: Optional[datetime] = None
    due_after: Optional[datetime] = None

    def clauses(self) -> list:
        result = []
        if self.statuses:
            result.append(models.Task.status.in_(self.statuses))
        if self.priorities:
            result.append(models.Task.priority.in_(self.priorities))
        if self.q:
            term = self.q.strip().lower()
            result.append(
                or_(
                    func.lower(models.Task.title).contains(term, autoescape=True),
                    func.lower(func.coalesce(models.Task.description, "")).contains(term, autoescape=True),
                )
            )
        if self.assignee_id is not None:
            result.append(models.Task.assigned_to_id == self.assignee_id)
        if self.creator_id is not None:
            result.append(models.Task.created_by_id == self.creator_id)
        if self.team:
            result.append(models.Task.team == self.team)
        if self.due_before is not None:
            result.append(models.Task.due_date <= self.due_before)
        if self.due_after is not None:
            result.append(models.Task.due_date >= self.due_after)
        return result

    def fingerprint(self) -> str:
        """Stable short digest of the filter values, for cache keys."""
        payload = json.dumps(asdict(self), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def apply_task_filters(query: Query, filters: Optional[TaskFilters]) -> Query:
    if filters is None:
        return query
    clauses = filters.clauses()
    if clauses:
        query = query.filter(and_(*clauses))
    return query


def parse_csv(value: Optional[str]) -> List[str]:
    """Split a comma-separated query parameter into trimmed, non-empty values."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Pagination:
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE
    sort_by: str = DEFAULT_SORT_FIELD
    order: str = DEFAULT_SORT_ORDER

    @classmethod
    def build(
        cls,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        sort_by: Optional[str] = None,
        order: Optional[str] = None,
    ) -> "Pagination":
        """Normalize raw paging input: page >= 1, 1 <= limit <= MAX_PAGE_SIZE, allow-listed sort."""
        page = page if page and page > 0 else 1
        limit = limit if limit and limit > 0 else DEFAULT_PAGE_SIZE
        limit = min(limit, MAX_PAGE_SIZE)
        sort_by = SORT_FIELD_ALIASES.get(sort_by, sort_by)
        sort_by = sort_by if sort_by in SORTABLE_FIELDS else DEFAULT_SORT_FIELD
        order = order if order in ("asc", "desc") else DEFAULT_SORT_ORDER
        return cls(page=page, limit=limit, sort_by=sort_by, order=order)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def pages(self, total: int) -> int:
        return (total + self.limit - 1) // self.limit

    def metadata(self, total: int) -> dict:
        return {"page": self.page, "limit": self.limit, "total": total, "pages": self.pages(total)}


def task_order_by(pagination: Pagination) -> list:
    """Order clauses for a task listing, with id as deterministic tiebreaker."""
    direction = asc if pagination.order == "asc" else desc
    if pagination.sort_by == "priority":
        column = _PRIORITY_RANK
    elif pagination.sort_by == "due_date":
        column = models.Task.due_date
    else:
        column = models.Task.created_at
    return [direction(column), direction(models.Task.id)]


def paginate(query: Query, pagination: Pagination, order_by: Optional[list] = None):
    """Return (rows, total) for one page of an already-scoped query."""
    total = query.order_by(None).count()
    rows = (
        query.order_by(*(order_by or task_order_by(pagination)))
        .offset(pagination.offset)
        .limit(pagination.limit)
        .all()
    )
    return rows, total


def user_scope_filter(principal: Any):
    """
    Build the visibility predicate for user listings.

    Admins see everyone, managers see their team, and a manager without a
    team (or any lower role) sees only their own record.
    """
    role = normalize_role(getattr(principal, "role", None))
    team = getattr(principal, "team", None) or None

    if role == Role.admin.value:
        return None
    if role == Role.manager.value and team:
        return models.User.team == team
    if role == Role.manager.value:
        return models.User.id == principal.id
    return false()
