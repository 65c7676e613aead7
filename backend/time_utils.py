"""
Time utilities for the task management API.

This module provides a single source of truth for time operations,
ensuring consistency across all endpoints and preventing clock drift issues.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC time.
    Single source of truth for "now" throughout the application.

    Returns:
        timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.

    Naive datetimes (as returned by SQLite) are assumed to already be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_overdue(due_date: Optional[datetime], status: str) -> bool:
    """
    Check if a task is overdue.

    A task is overdue if it has a due date in the past and is not completed.

    Args:
        due_date: The task's due date
        status: The task's status

    Returns:
        True if task is overdue (due in past, not completed), False otherwise
    """
    if not due_date or status == "completed":
        return False
    return as_utc(due_date) < utc_now()


def days_between(start: datetime, end: datetime) -> float:
    """Elapsed time between two datetimes, in fractional days."""
    return (as_utc(end) - as_utc(start)).total_seconds() / (60 * 60 * 24)
