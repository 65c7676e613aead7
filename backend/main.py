from fastapi import FastAPI, Depends, Query, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import and_, case, func, or_
from typing import List, Optional
from datetime import datetime
import logging
import sys

import config
from database import get_db, engine, Base, SessionLocal
import models
import schemas
from errors import Forbidden, NotFound, ValidationFailed, register_exception_handlers, success
from time_utils import days_between, utc_now
from auth.routes import router as auth_router
from auth.dependencies import get_current_principal, get_current_user
from auth.permissions import (
    can_access_task,
    can_assign_task,
    can_view_team_stats,
    can_view_user_stats,
)
from auth.roles import Principal, Role
from auth.scopes import (
    Pagination,
    TaskFilters,
    apply_task_filters,
    paginate,
    parse_csv,
    scoped_task_query,
)
from auth.security import hash_password
from services.cache import CacheService, analytics_key, get_cache, task_list_key
from services.notifications import NotificationService, get_notifier

# Configure logging
logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Task Management API",
    description="Role-based task management with team-scoped visibility, assignment and analytics",
    version="1.0.0"
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Register authentication router
app.include_router(auth_router)

# Bulk emails are capped so one request cannot flood the mail queue
BULK_ASSIGN_EMAIL_LIMIT = 10


# ============== Startup / Shutdown ==============

def ensure_admin_user(db: Session) -> None:
    """
    Ensure the bootstrap admin account exists.

    Public registration can never create an admin, so this is the only way
    to obtain the first one. Refuses the default password in production-like
    environments.
    """
    admin = db.query(models.User).filter(models.User.email == config.ADMIN_EMAIL).first()
    if admin:
        logger.info(f"Admin user already exists (email: {config.ADMIN_EMAIL})")
        return

    admin_password = config.ADMIN_PASSWORD
    is_default_password = admin_password.strip() == "admin123"

    if config.is_production_like() and (is_default_password or len(admin_password.strip()) < 8):
        logger.error(
            "=" * 80 + "\n"
            "❌ STARTUP FAILED: Secure ADMIN_PASSWORD is required in production/staging!\n"
            "❌ Password must not be the default and must be at least 8 characters long.\n"
            "❌ Example: ADMIN_PASSWORD=$(openssl rand -base64 32)\n" +
            "=" * 80
        )
        sys.exit(1)

    admin = models.User(
        username=config.ADMIN_USERNAME,
        email=config.ADMIN_EMAIL,
        password_hash=hash_password(admin_password),
        role=Role.admin.value,
        is_email_verified=True,
    )
    db.add(admin)
    db.commit()

    if is_default_password:
        logger.warning(
            "=" * 80 + "\n"
            "⚠️  SECURITY WARNING: Admin user created with DEFAULT password 'admin123'\n"
            "⚠️  This is OK for local development but DANGEROUS for production!\n"
            "⚠️  Set ADMIN_PASSWORD environment variable to use a custom password.\n" +
            "=" * 80
        )
    else:
        logger.info(f"✅ Admin user created (email: {config.ADMIN_EMAIL})")


@app.on_event("startup")
def startup():
    if config.AUTO_CREATE_TABLES:
        Base.metadata.create_all(bind=engine)

    if config.SEED_ADMIN:
        db = SessionLocal()
        try:
            ensure_admin_user(db)
        finally:
            db.close()

    get_notifier().start()


@app.on_event("shutdown")
def shutdown():
    get_notifier().stop()


@app.get("/health")
def health_check(cache: CacheService = Depends(get_cache)):
    return {"status": "healthy", "cache": "available" if cache.available else "unavailable"}


# ============== Helpers ==============

def _task_query(db: Session):
    return db.query(models.Task).options(
        joinedload(models.Task.creator),
        joinedload(models.Task.assignee),
    )


def _serialize_task(task: models.Task) -> dict:
    return schemas.TaskOut.model_validate(task).model_dump(mode="json")


def _get_visible_task(db: Session, principal: Principal, task_id: int) -> models.Task:
    """
    Load a task the principal may act on.

    Missing and out-of-scope tasks are indistinguishable to the caller.
    """
    task = _task_query(db).filter(models.Task.id == task_id).first()
    if task is None or not can_access_task(principal, task):
        if task is not None:
            logger.info(f"User {principal.id} ({principal.role}) denied access to task {task_id}")
        raise NotFound("Task not found", code="TASK_NOT_FOUND")
    return task


def _get_user_or_404(db: Session, user_id: int, message: str = "User not found") -> models.User:
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if user is None:
        raise NotFound(message, code="USER_NOT_FOUND")
    return user


def _parse_enum_csv(raw: Optional[str], enum_cls, field: str) -> List[str]:
    values = parse_csv(raw)
    allowed = [member.value for member in enum_cls]
    invalid = [value for value in values if value not in allowed]
    if invalid:
        raise ValidationFailed(
            "Validation failed",
            details=[f"{field}: '{value}' is not one of {', '.join(allowed)}" for value in invalid],
        )
    return values


def _overdue_on_write():
    """Status expression applying the overdue rule inside a bulk UPDATE."""
    return case(
        (
            and_(
                models.Task.due_date.isnot(None),
                models.Task.due_date < utc_now(),
                models.Task.status != models.TaskStatus.completed,
            ),
            models.TaskStatus.overdue.value,
        ),
        else_=models.Task.status,
    )


# ============== Tasks ==============

@app.post("/api/tasks", status_code=status.HTTP_201_CREATED)
def create_task(
    task: schemas.TaskCreate,
    current_user: models.User = Depends(get_current_user),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    notifier: NotificationService = Depends(get_notifier),
):
    """
    Create a task.

    The creator is always the caller. The assignee defaults to the creator;
    assigning anyone else requires assignment capability. The team defaults
    to the creator's team and only admins may file a task under another team.
    """
    logger.info(f"User {principal.id} creating task: {task.title}")

    assignee = current_user
    if task.assigned_to_id is not None and task.assigned_to_id != principal.id:
        if not can_assign_task(principal):
            logger.info(f"User {principal.id} ({principal.role}) cannot assign tasks to others")
            raise Forbidden("You do not have permission to assign tasks to others")
        assignee = _get_user_or_404(db, task.assigned_to_id, "Assignee user not found")

    team = principal.team
    if task.team and task.team != principal.team:
        if not principal.is_admin:
            logger.info(f"User {principal.id} attempted to create a task for team '{task.team}'")
            raise Forbidden("You can only create tasks for your own team")
        team = task.team

    db_task = models.Task(
        title=task.title,
        description=task.description,
        due_date=task.due_date,
        priority=task.priority,
        status=models.TaskStatus.todo,
        created_by_id=principal.id,
        assigned_to_id=assignee.id,
        team=team,
    )
    db.add(db_task)
    db.commit()
    db_task = _task_query(db).filter(models.Task.id == db_task.id).one()

    cache.invalidate_task_caches()
    notifier.task_created(db_task)
    if assignee.id != principal.id:
        notifier.assignment_email(assignee, db_task, current_user)

    logger.info(f"Task created successfully: id={db_task.id}, team={team}, assignee={assignee.id}")
    return success({"message": "Task created successfully", "task": _serialize_task(db_task)})


@app.get("/api/tasks")
def list_tasks(
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1),
    status: Optional[str] = Query(None, description="Comma-separated statuses"),
    priority: Optional[str] = Query(None, description="Comma-separated priorities"),
    sort_by: Optional[str] = Query(None, description="created_at (createdAt), due_date (dueDate) or priority"),
    order: Optional[str] = Query(None, description="asc or desc"),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    """List tasks visible to the caller, paginated and cached per scope."""
    filters = TaskFilters(
        statuses=_parse_enum_csv(status, models.TaskStatus, "status"),
        priorities=_parse_enum_csv(priority, models.TaskPriority, "priority"),
    )
    pagination = Pagination.build(page=page, limit=limit, sort_by=sort_by, order=order)
    logger.debug(f"User {principal.id} listing tasks: {filters}, {pagination}")

    def compute():
        query = apply_task_filters(scoped_task_query(db, principal, _task_query(db)), filters)
        tasks, total = paginate(query, pagination)
        return {
            "tasks": [_serialize_task(t) for t in tasks],
            "pagination": pagination.metadata(total),
        }

    key = task_list_key(
        principal.id,
        principal.role,
        pagination.page,
        pagination.limit,
        f"{filters.fingerprint()}:{pagination.sort_by}:{pagination.order}",
    )
    data, _ = cache.cached(key, config.CACHE_TTL_TASK_LIST, compute)
    return success(data)


@app.get("/api/tasks/assigned-to-me")
def list_assigned_to_me(
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1),
    status: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """Tasks assigned to the caller, most urgent due date first, undated last."""
    filters = TaskFilters(
        statuses=_parse_enum_csv(status, models.TaskStatus, "status"),
        priorities=_parse_enum_csv(priority, models.TaskPriority, "priority"),
        assignee_id=principal.id,
    )
    pagination = Pagination.build(page=page, limit=limit)

    query = apply_task_filters(_task_query(db), filters)
    order_by = [
        case((models.Task.due_date.is_(None), 1), else_=0),
        models.Task.due_date.asc(),
        models.Task.created_at.desc(),
        models.Task.id.desc(),
    ]
    tasks, total = paginate(query, pagination, order_by)

    return success(
        {
            "tasks": [_serialize_task(t) for t in tasks],
            "pagination": pagination.metadata(total),
        }
    )


@app.get("/api/tasks/search")
def search_tasks(
    q: Optional[str] = Query(None, max_length=200, description="Text matched against title and description"),
    status: Optional[str] = Query(None, description="Comma-separated statuses"),
    priority: Optional[str] = Query(None, description="Comma-separated priorities"),
    assignee: Optional[int] = Query(None, description="Assignee user id"),
    creator: Optional[int] = Query(None, description="Creator user id"),
    team: Optional[str] = Query(None, max_length=100),
    due_before: Optional[datetime] = Query(None, description="Due on or before this date"),
    due_after: Optional[datetime] = Query(None, description="Due on or after this date"),
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1),
    sort_by: Optional[str] = Query(None),
    order: Optional[str] = Query(None),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """
    Search tasks with filters.

    Filters only ever narrow the caller's scope: a ``team`` parameter from a
    plain user is intersected with their own tasks, never substituted.
    """
    if q is not None and not q.strip():
        logger.info("Empty or whitespace-only search query provided")
        raise ValidationFailed("Search query cannot be empty or whitespace only")

    filters = TaskFilters(
        statuses=_parse_enum_csv(status, models.TaskStatus, "status"),
        priorities=_parse_enum_csv(priority, models.TaskPriority, "priority"),
        q=q,
        assignee_id=assignee,
        creator_id=creator,
        team=team,
        due_before=due_before,
        due_after=due_after,
    )
    pagination = Pagination.build(page=page, limit=limit, sort_by=sort_by, order=order)
    logger.debug(f"User {principal.id} ({principal.role}) searching tasks: {filters}")

    query = apply_task_filters(scoped_task_query(db, principal, _task_query(db)), filters)
    tasks, total = paginate(query, pagination)

    return success(
        {
            "tasks": [_serialize_task(t) for t in tasks],
            "pagination": pagination.metadata(total),
            "query": {
                "q": q,
                "status": filters.statuses,
                "priority": filters.priorities,
                "assignee": assignee,
                "creator": creator,
                "team": team,
                "due_before": due_before,
                "due_after": due_after,
            },
        }
    )


@app.post("/api/tasks/bulk-assign")
def bulk_assign_tasks(
    payload: schemas.BulkAssign,
    current_user: models.User = Depends(get_current_user),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    notifier: NotificationService = Depends(get_notifier),
):
    """
    Assign many tasks to one user in a single write (manager or admin).

    Only tasks inside the caller's scope are touched; ids outside it are
    silently skipped and show up as the gap between requested and matched.
    """
    if not can_assign_task(principal):
        logger.info(f"User {principal.id} ({principal.role}) cannot bulk assign")
        raise Forbidden("You do not have permission to assign tasks")

    assignee = _get_user_or_404(db, payload.assigned_to_id, "Assignee user not found")
    task_ids = sorted(set(payload.task_ids))

    scoped = scoped_task_query(db, principal).filter(models.Task.id.in_(task_ids))
    matched = scoped.count()
    changing_ids = [
        row.id
        for row in scoped.filter(
            or_(models.Task.assigned_to_id.is_(None), models.Task.assigned_to_id != assignee.id)
        ).with_entities(models.Task.id)
    ]

    modified = 0
    if changing_ids:
        modified = (
            db.query(models.Task)
            .filter(models.Task.id.in_(changing_ids))
            .update(
                {models.Task.assigned_to_id: assignee.id, models.Task.status: _overdue_on_write()},
                synchronize_session=False,
            )
        )
    db.commit()

    cache.invalidate_task_caches()
    logger.info(
        f"Bulk assign by {principal.id}: requested={len(task_ids)}, matched={matched}, "
        f"modified={modified}, assignee={assignee.id}"
    )

    if modified:
        assigned = (
            db.query(models.Task)
            .filter(models.Task.id.in_(changing_ids))
            .order_by(models.Task.id)
            .all()
        )
        for task in assigned:
            notifier.task_assigned(task, assignee.id)
        if assignee.id != principal.id:
            for task in assigned[:BULK_ASSIGN_EMAIL_LIMIT]:
                notifier.assignment_email(assignee, task, current_user)

    return success(
        {
            "message": f"Successfully assigned {modified} task(s)",
            "requested_count": len(task_ids),
            "matched_count": matched,
            "modified_count": modified,
        }
    )


@app.get("/api/tasks/{task_id}")
def get_task(
    task_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    task = _get_visible_task(db, principal, task_id)
    return success({"task": _serialize_task(task)})


@app.put("/api/tasks/{task_id}")
def update_task(
    task_id: int,
    task_update: schemas.TaskUpdate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    notifier: NotificationService = Depends(get_notifier),
):
    """Update title, description, due date, priority or status of a visible task."""
    task = _get_visible_task(db, principal, task_id)

    update_data = task_update.model_dump(exclude_unset=True)
    if not update_data:
        raise ValidationFailed("No fields to update")

    # Columns that are non-nullable reject explicit nulls with a 400, not a 500
    null_fields = [key for key in ("title", "priority", "status") if key in update_data and update_data[key] is None]
    if null_fields:
        raise ValidationFailed(
            "Validation failed", details=[f"{key}: cannot be null" for key in null_fields]
        )

    was_completed = task.status == models.TaskStatus.completed
    for key, value in update_data.items():
        setattr(task, key, value)
    db.commit()
    task = _task_query(db).filter(models.Task.id == task_id).one()

    cache.invalidate_task_caches()
    notifier.task_updated(task)
    if task.status == models.TaskStatus.completed and not was_completed:
        notifier.task_completed(task)

    logger.info(f"Task {task_id} updated by {principal.id}: {sorted(update_data)}")
    return success({"message": "Task updated successfully", "task": _serialize_task(task)})


@app.delete("/api/tasks/{task_id}")
def delete_task(
    task_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    notifier: NotificationService = Depends(get_notifier),
):
    task = _get_visible_task(db, principal, task_id)
    team = task.team

    db.delete(task)
    db.commit()

    cache.invalidate_task_caches()
    notifier.task_deleted(task_id, team)

    logger.info(f"Task {task_id} deleted by {principal.id}")
    return success({"message": "Task deleted successfully"})


@app.put("/api/tasks/{task_id}/assign")
def assign_task(
    task_id: int,
    payload: schemas.TaskAssign,
    current_user: models.User = Depends(get_current_user),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    notifier: NotificationService = Depends(get_notifier),
):
    """
    Reassign a task (manager or admin).

    Capability is checked before visibility, so a plain user learns nothing
    about the task id they tried.
    """
    if not can_assign_task(principal):
        logger.info(f"User {principal.id} ({principal.role}) cannot assign tasks")
        raise Forbidden("You do not have permission to assign tasks")

    task = _get_visible_task(db, principal, task_id)
    assignee = _get_user_or_404(db, payload.assigned_to_id, "Assignee user not found")
    previous_assignee = task.assignee

    task.assigned_to_id = assignee.id
    db.commit()
    task = _task_query(db).filter(models.Task.id == task_id).one()

    cache.invalidate_task_caches()
    notifier.task_assigned(task, assignee.id)
    if assignee.id != principal.id:
        notifier.assignment_email(assignee, task, current_user, previous_assignee=previous_assignee)

    logger.info(f"Task {task_id} assigned to {assignee.id} by {principal.id}")
    return success({"message": "Task assigned successfully", "task": _serialize_task(task)})


# ============== Analytics ==============

def _status_counts(query) -> dict:
    """Count tasks per status for an already-scoped query, including zero buckets."""
    rows = query.with_entities(models.Task.status, func.count(models.Task.id)).group_by(models.Task.status).all()
    counts = {member.value: 0 for member in models.TaskStatus}
    for task_status, count in rows:
        counts[getattr(task_status, "value", task_status)] = count
    return counts


def _summary(counts: dict) -> dict:
    total = sum(counts.values())
    completed = counts[models.TaskStatus.completed.value]
    return {
        "total_tasks": total,
        "completed": completed,
        "pending": counts[models.TaskStatus.todo.value] + counts[models.TaskStatus.in_progress.value],
        "overdue": counts[models.TaskStatus.overdue.value],
        "completion_rate": round(completed / total * 100, 2) if total else 0.0,
    }


@app.get("/api/analytics/overview")
def analytics_overview(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    """Totals over the caller's task scope, cached per principal and role."""
    key = analytics_key("overview", f"{principal.id}:{principal.role}")
    data, hit = cache.cached(
        key,
        config.CACHE_TTL_ANALYTICS,
        lambda: _summary(_status_counts(scoped_task_query(db, principal))),
    )
    return success(data, cached=hit)


@app.get("/api/analytics/tasks-by-status")
def analytics_tasks_by_status(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return success(_status_counts(scoped_task_query(db, principal)))


@app.get("/api/analytics/team/{team_name}")
def analytics_team(
    team_name: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    """
    Team totals plus per-member assignment counts.

    Admins may view any team, managers only their own, plain users none.
    Member counts only include tasks filed under the team.
    """
    if not can_view_team_stats(principal, team_name):
        logger.info(f"User {principal.id} ({principal.role}) denied stats for team '{team_name}'")
        if principal.role == Role.manager.value:
            raise Forbidden("You can only view your own team statistics")
        raise Forbidden("Insufficient permissions")

    def compute():
        team_tasks = db.query(models.Task).filter(models.Task.team == team_name)
        summary = _summary(_status_counts(team_tasks))
        summary.pop("completion_rate")

        members = (
            db.query(models.User)
            .filter(models.User.team == team_name)
            .order_by(models.User.username)
            .all()
        )
        assigned_counts = dict(
            team_tasks.with_entities(models.Task.assigned_to_id, func.count(models.Task.id))
            .group_by(models.Task.assigned_to_id)
            .all()
        )
        completed_counts = dict(
            team_tasks.filter(models.Task.status == models.TaskStatus.completed)
            .with_entities(models.Task.assigned_to_id, func.count(models.Task.id))
            .group_by(models.Task.assigned_to_id)
            .all()
        )
        return {
            "team": team_name,
            **summary,
            "members": [
                {
                    "user_id": member.id,
                    "username": member.username,
                    "email": member.email,
                    "tasks_assigned": assigned_counts.get(member.id, 0),
                    "tasks_completed": completed_counts.get(member.id, 0),
                }
                for member in members
            ],
        }

    data, _ = cache.cached(analytics_key("team", team_name), config.CACHE_TTL_ANALYTICS, compute)
    return success(data)


@app.get("/api/analytics/user/{user_id}")
def analytics_user(
    user_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    """Assignment counts and average completion time for one user."""
    target = _get_user_or_404(db, user_id)
    if not can_view_user_stats(principal, target):
        logger.info(f"User {principal.id} ({principal.role}) denied stats for user {user_id}")
        raise Forbidden("Insufficient permissions")

    def compute():
        assigned = db.query(models.Task).filter(models.Task.assigned_to_id == target.id)
        counts = _status_counts(assigned)
        total_created = db.query(models.Task).filter(models.Task.created_by_id == target.id).count()

        completed_tasks = (
            assigned.filter(models.Task.status == models.TaskStatus.completed)
            .with_entities(models.Task.created_at, models.Task.updated_at)
            .all()
        )
        durations = [
            days_between(created_at, updated_at)
            for created_at, updated_at in completed_tasks
            if created_at is not None and updated_at is not None
        ]
        average = sum(durations) / len(durations) if durations else 0.0

        return {
            "user_id": target.id,
            "username": target.username,
            "email": target.email,
            "total_assigned": sum(counts.values()),
            "completed": counts[models.TaskStatus.completed.value],
            "pending": counts[models.TaskStatus.todo.value] + counts[models.TaskStatus.in_progress.value],
            "overdue": counts[models.TaskStatus.overdue.value],
            "total_created": total_created,
            "avg_completion_days": round(average, 2),
        }

    data, _ = cache.cached(analytics_key("user", str(target.id)), config.CACHE_TTL_ANALYTICS, compute)
    return success(data)
