from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from datetime import datetime
from typing import Optional, List

from auth.roles import Role
from auth.security import is_strong_password
from models import TaskPriority, TaskStatus
from time_utils import as_utc, utc_now


USERNAME_PATTERN = r"^[A-Za-z0-9_]+$"


def _strip_or_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


# ============== Auth ==============

class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    # Accepted for compatibility; elevated values are downgraded on registration
    role: Optional[Role] = None
    team: Optional[str] = Field(None, max_length=100)

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        if not is_strong_password(value):
            raise ValueError(
                "Password must contain at least one uppercase letter, one lowercase letter, "
                "one number, and one special character (@$!%*?&)"
            )
        return value

    @field_validator("team")
    @classmethod
    def normalize_team(cls, value: Optional[str]) -> Optional[str]:
        return _strip_or_none(value)


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, description="Email or username")
    password: str = Field(..., min_length=1)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    role: str
    team: Optional[str] = None
    is_email_verified: bool = False
    created_at: Optional[datetime] = None


class AuthResult(BaseModel):
    token: str
    token_type: str = "bearer"
    user: UserOut


class RoleUpdate(BaseModel):
    role: Role


# ============== Tasks ==============

class TaskBase(BaseModel):
    title: str = Field(..., min_length=3, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    due_date: Optional[datetime] = None
    priority: TaskPriority = TaskPriority.medium

    @field_validator("title")
    @classmethod
    def strip_title(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 3:
            raise ValueError("Title must be at least 3 characters")
        return value

    @field_validator("due_date")
    @classmethod
    def normalize_due_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class TaskCreate(TaskBase):
    assigned_to_id: Optional[int] = None
    team: Optional[str] = Field(None, max_length=100)

    @field_validator("due_date")
    @classmethod
    def due_date_not_in_past(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and as_utc(value) < utc_now():
            raise ValueError("Due date cannot be in the past")
        return value

    @field_validator("team")
    @classmethod
    def normalize_team(cls, value: Optional[str]) -> Optional[str]:
        return _strip_or_none(value)


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=3, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    due_date: Optional[datetime] = None
    priority: Optional[TaskPriority] = None
    status: Optional[TaskStatus] = None

    @field_validator("title")
    @classmethod
    def strip_title(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if len(value) < 3:
            raise ValueError("Title must be at least 3 characters")
        return value

    @field_validator("due_date")
    @classmethod
    def normalize_due_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class TaskAssign(BaseModel):
    assigned_to_id: int = Field(..., gt=0)


class BulkAssign(BaseModel):
    task_ids: List[int] = Field(..., min_length=1, max_length=500)
    assigned_to_id: int = Field(..., gt=0)


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    role: str


class TaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: TaskPriority
    status: TaskStatus
    team: Optional[str] = None
    created_by_id: Optional[int] = None
    assigned_to_id: Optional[int] = None
    creator: Optional[UserSummary] = None
    assignee: Optional[UserSummary] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("due_date", "created_at", "updated_at")
    @classmethod
    def ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)
