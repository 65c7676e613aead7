"""
Test configuration and fixtures for the task management API tests.

Provides:
- Test database with SQLite in-memory for speed
- FastAPI test client with database, cache and notifier dependency overrides
- Authentication helpers (JWT token generation)
- Common fixtures: one principal per role and team, plus a task factory
"""

import os
import sys
import json
import logging
from datetime import timedelta
from typing import Callable, Dict, Generator, List, Optional

# Must be set before the application modules read their configuration
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")
os.environ["SEED_ADMIN"] = "false"
os.environ["CACHE_BACKEND"] = "memory"
os.environ.pop("REDIS_URL", None)
os.environ.pop("SMTP_HOST", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, get_db
from main import app
import models
from auth.security import hash_password, create_access_token
from services.cache import CacheService, MemoryCacheBackend, get_cache
from services.mailer import Mailer
from services.notifications import NotificationService, get_notifier

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

TEST_PASSWORD = "Passw0rd!"


class RecordingPublisher:
    """Publisher that keeps every message instead of sending it."""

    def __init__(self):
        self.messages: List[Dict] = []

    def publish(self, room: str, message: str) -> None:
        self.messages.append({"room": room, **json.loads(message)})

    def rooms_for(self, event: str) -> List[str]:
        return [m["room"] for m in self.messages if m["event"] == event]


class RecordingMailer(Mailer):
    """Mailer that records outgoing messages instead of talking SMTP."""

    def __init__(self):
        super().__init__(host="smtp.test", sender="noreply@test.com")
        self.sent = []

    def deliver(self, message) -> None:
        self.sent.append(message)


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.

    This ensures test isolation and fast execution.
    """
    logger.debug("Creating test database")

    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
        logger.debug("Test database cleaned up")


@pytest.fixture(scope="function")
def cache() -> CacheService:
    return CacheService(MemoryCacheBackend())


@pytest.fixture(scope="function")
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture(scope="function")
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture(scope="function")
def notifier(publisher: RecordingPublisher, mailer: RecordingMailer) -> NotificationService:
    """
    Notification service without a worker thread.

    Tests call ``notifier.drain()`` to process queued jobs deterministically.
    """
    return NotificationService(publisher, mailer)


@pytest.fixture(scope="function")
def client(test_db: Session, cache: CacheService, notifier: NotificationService) -> TestClient:
    """
    Create FastAPI test client with database, cache and notifier overrides.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_notifier] = lambda: notifier

    yield TestClient(app)

    app.dependency_overrides.clear()


def create_user(
    db: Session,
    username: str,
    role: str = "user",
    team: Optional[str] = None,
    email: Optional[str] = None,
) -> models.User:
    """Insert a user directly, bypassing the registration endpoint."""
    user = models.User(
        username=username,
        email=email or f"{username}@test.com",
        password_hash=hash_password(TEST_PASSWORD),
        role=role,
        team=team,
        is_email_verified=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.debug(f"Created {role} '{username}' (team={team}) with ID: {user.id}")
    return user


def create_auth_token(user: models.User, expires_delta: timedelta = None) -> str:
    """
    Helper to create JWT access token for a user.

    Args:
        user: User to create token for
        expires_delta: Optional expiration time override

    Returns:
        JWT access token string
    """
    token_data = {
        "sub": str(user.id),
        "role": user.role,
        "email": user.email
    }
    return create_access_token(token_data, expires_delta)


def auth_headers_for(user: models.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}


@pytest.fixture(scope="function")
def admin_user(test_db: Session) -> models.User:
    return create_user(test_db, "admin_user", role="admin", team="Operations")


@pytest.fixture(scope="function")
def sales_manager(test_db: Session) -> models.User:
    return create_user(test_db, "sales_manager", role="manager", team="Sales")


@pytest.fixture(scope="function")
def engineering_manager(test_db: Session) -> models.User:
    return create_user(test_db, "eng_manager", role="manager", team="Engineering")


@pytest.fixture(scope="function")
def teamless_manager(test_db: Session) -> models.User:
    return create_user(test_db, "lone_manager", role="manager", team=None)


@pytest.fixture(scope="function")
def sales_user(test_db: Session) -> models.User:
    return create_user(test_db, "sales_user", role="user", team="Sales")


@pytest.fixture(scope="function")
def sales_user_2(test_db: Session) -> models.User:
    return create_user(test_db, "sales_user_2", role="user", team="Sales")


@pytest.fixture(scope="function")
def engineering_user(test_db: Session) -> models.User:
    return create_user(test_db, "eng_user", role="user", team="Engineering")


@pytest.fixture(scope="function")
def auth_headers(admin_user: models.User) -> Dict[str, str]:
    """
    Create authorization headers with admin token.
    """
    return auth_headers_for(admin_user)


@pytest.fixture(scope="function")
def make_task(test_db: Session) -> Callable[..., models.Task]:
    """
    Factory inserting tasks directly.

    Example:
        task = make_task(creator=admin_user, assignee=sales_user, team="Sales")
    """
    def _make_task(
        creator: models.User,
        assignee: Optional[models.User] = None,
        team: Optional[str] = None,
        title: str = "Test task",
        description: Optional[str] = None,
        status: models.TaskStatus = models.TaskStatus.todo,
        priority: models.TaskPriority = models.TaskPriority.medium,
        due_date=None,
    ) -> models.Task:
        task = models.Task(
            title=title,
            description=description,
            status=status,
            priority=priority,
            due_date=due_date,
            created_by_id=creator.id,
            assigned_to_id=assignee.id if assignee else None,
            team=team,
        )
        test_db.add(task)
        test_db.commit()
        test_db.refresh(task)
        return task

    return _make_task
