from sqlalchemy import Column, Integer, String, Text, ForeignKey, DateTime, Enum, Boolean, event
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
import logging

from database import Base
from time_utils import is_overdue

logger = logging.getLogger(__name__)


class TaskPriority(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"


class TaskStatus(str, enum.Enum):
    todo = "todo"
    in_progress = "in-progress"
    completed = "completed"
    overdue = "overdue"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(30), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    # Role vocabulary lives in auth.roles; unknown values resolve to the lowest level
    role = Column(String(20), nullable=False, default="user")
    team = Column(String(100), nullable=True, index=True)
    is_email_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    created_tasks = relationship("Task", foreign_keys="Task.created_by_id", back_populates="creator")
    assigned_tasks = relationship("Task", foreign_keys="Task.assigned_to_id", back_populates="assignee")


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text)
    due_date = Column(DateTime(timezone=True), nullable=True)
    priority = Column(
        Enum(TaskPriority, name="task_priority", values_callable=_enum_values),
        nullable=False,
        default=TaskPriority.medium,
    )
    status = Column(
        Enum(TaskStatus, name="task_status", values_callable=_enum_values),
        nullable=False,
        default=TaskStatus.todo,
    )
    created_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), index=True)
    assigned_to_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), index=True)
    team = Column(String(100), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    creator = relationship("User", foreign_keys=[created_by_id], back_populates="created_tasks")
    assignee = relationship("User", foreign_keys=[assigned_to_id], back_populates="assigned_tasks")


class RevokedToken(Base):
    """
    Marker for a bearer token revoked before its natural expiry.

    Only a SHA-256 digest of the token is stored. The row is meaningless once
    ``expires_at`` has passed, because the token itself no longer verifies.
    """

    __tablename__ = "revoked_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


@event.listens_for(Task, "before_insert")
@event.listens_for(Task, "before_update")
def coerce_overdue_status(mapper, connection, target: Task) -> None:
    """Force status to overdue on every save when the due date has passed."""
    if is_overdue(target.due_date, target.status):
        if target.status != TaskStatus.overdue:
            logger.debug(f"Task {target.id} is past due, coercing status '{target.status}' to overdue")
        target.status = TaskStatus.overdue
