"""
Outbound task notifications.

Handlers only enqueue. A single background worker drains the queue and
performs the slow, failure-prone side effects: publishing realtime events to
the pub/sub fanout and sending assignment emails. Nothing raised by a
publisher or the mailer ever reaches the request that caused the event.

Each event is routed to rooms mirroring how realtime clients subscribe:
``user:<id>`` for one principal, ``team:<name>`` for a team, and
``admins`` for every admin.
"""

import json
import logging
import queue
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import redis
from fastapi.encoders import jsonable_encoder

import config
from services.mailer import Mailer

logger = logging.getLogger(__name__)

TASK_CREATED = "task:created"
TASK_ASSIGNED = "task:assigned"
TASK_UPDATED = "task:updated"
TASK_COMPLETED = "task:completed"
TASK_DELETED = "task:deleted"

ADMINS_ROOM = "admins"

_STOP = object()


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def team_room(team: str) -> str:
    return f"team:{team}"


@dataclass(frozen=True)
class TaskSnapshot:
    """Detached copy of a task, safe to hand to the worker thread."""

    id: int
    title: str
    description: Optional[str]
    priority: str
    status: str
    due_date: Optional[datetime]
    team: Optional[str]
    created_by_id: Optional[int]
    assigned_to_id: Optional[int]

    @classmethod
    def from_task(cls, task: Any) -> "TaskSnapshot":
        return cls(
            id=task.id,
            title=task.title,
            description=task.description,
            priority=getattr(task.priority, "value", task.priority),
            status=getattr(task.status, "value", task.status),
            due_date=task.due_date,
            team=task.team,
            created_by_id=task.created_by_id,
            assigned_to_id=task.assigned_to_id,
        )


@dataclass(frozen=True)
class UserSnapshot:
    id: int
    username: str
    email: str

    @classmethod
    def from_user(cls, user: Any) -> "UserSnapshot":
        return cls(id=user.id, username=user.username, email=user.email)


@dataclass
class NotificationEvent:
    """
    One realtime event and its audience.

    Args:
        event_type: One of the ``task:*`` event names
        payload: JSON-serializable event body
        recipient_user_ids: Principals to notify directly
        recipient_team: Team label to notify, if any
        admin_broadcast: Whether every admin is notified
    """

    event_type: str
    payload: Dict[str, Any]
    recipient_user_ids: List[int] = field(default_factory=list)
    recipient_team: Optional[str] = None
    admin_broadcast: bool = False

    def rooms(self) -> List[str]:
        result = []
        for user_id in self.recipient_user_ids:
            room = user_room(user_id)
            if room not in result:
                result.append(room)
        if self.recipient_team:
            result.append(team_room(self.recipient_team))
        if self.admin_broadcast:
            result.append(ADMINS_ROOM)
        return result


class LoggingPublisher:
    """Publisher used when no pub/sub backend is configured."""

    def publish(self, room: str, message: str) -> None:
        logger.debug(f"Notification for {room} (no pub/sub configured): {message}")


class RedisPublisher:
    """Publishes events as JSON on ``<prefix>:<room>`` redis channels."""

    def __init__(self, client: Any, prefix: str = "notifications"):
        self.client = client
        self.prefix = prefix

    def channel(self, room: str) -> str:
        return f"{self.prefix}:{room}"

    def publish(self, room: str, message: str) -> None:
        self.client.publish(self.channel(room), message)


class NotificationService:
    """
    Queue of outbound side effects with one background consumer.

    Args:
        publisher: Object with ``publish(room, message)``
        mailer: Mailer used for assignment emails
        max_queue_size: Jobs beyond this are dropped with a warning
    """

    def __init__(self, publisher: Any, mailer: Optional[Mailer] = None, max_queue_size: int = 1000):
        self.publisher = publisher
        self.mailer = mailer or Mailer()
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_queue_size)
        self._worker: Optional[threading.Thread] = None

    # ============== Worker lifecycle ==============

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._worker = threading.Thread(target=self._run, name="notification-worker", daemon=True)
        self._worker.start()
        logger.info("🔔 Notification worker started")

    def stop(self, timeout: float = 5.0) -> None:
        if not self.running:
            return
        self._queue.put(_STOP)
        self._worker.join(timeout)
        self._worker = None
        logger.info("Notification worker stopped")

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                self._execute(job)
            finally:
                self._queue.task_done()

    def drain(self) -> int:
        """Process every queued job on the calling thread. Returns the number processed."""
        processed = 0
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                return processed
            try:
                if job is not _STOP:
                    self._execute(job)
                    processed += 1
            finally:
                self._queue.task_done()

    def _enqueue(self, description: str, job: Callable[[], None]) -> bool:
        try:
            self._queue.put_nowait((description, job))
        except queue.Full:
            logger.warning(f"⚠️  Notification queue full, dropping {description}")
            return False
        return True

    def _execute(self, job) -> None:
        description, action = job
        try:
            action()
        except Exception as e:
            logger.error(f"❌ Notification delivery failed ({description}): {e}")

    # ============== Realtime events ==============

    def publish(self, event: NotificationEvent) -> bool:
        return self._enqueue(event.event_type, lambda: self._deliver(event))

    def _deliver(self, event: NotificationEvent) -> None:
        for room in event.rooms():
            message = json.dumps(
                {"event": event.event_type, "room": room, "data": jsonable_encoder(event.payload)}
            )
            try:
                self.publisher.publish(room, message)
            except Exception as e:
                logger.error(f"❌ Failed to publish {event.event_type} to {room}: {e}")
        logger.debug(f"Published {event.event_type} to {len(event.rooms())} rooms")

    def task_created(self, task: Any) -> bool:
        snapshot = TaskSnapshot.from_task(task)
        return self.publish(
            NotificationEvent(
                TASK_CREATED,
                {"message": "New task created", "task": asdict(snapshot)},
                recipient_user_ids=[snapshot.assigned_to_id] if snapshot.assigned_to_id else [],
                recipient_team=snapshot.team,
                admin_broadcast=True,
            )
        )

    def task_assigned(self, task: Any, assignee_id: int) -> bool:
        snapshot = TaskSnapshot.from_task(task)
        return self.publish(
            NotificationEvent(
                TASK_ASSIGNED,
                {"message": "Task assigned to you", "task": asdict(snapshot)},
                recipient_user_ids=[assignee_id],
                recipient_team=snapshot.team,
            )
        )

    def task_updated(self, task: Any) -> bool:
        snapshot = TaskSnapshot.from_task(task)
        recipients = [uid for uid in (snapshot.assigned_to_id, snapshot.created_by_id) if uid]
        return self.publish(
            NotificationEvent(
                TASK_UPDATED,
                {"message": "Task updated", "task": asdict(snapshot)},
                recipient_user_ids=recipients,
                recipient_team=snapshot.team,
            )
        )

    def task_completed(self, task: Any) -> bool:
        snapshot = TaskSnapshot.from_task(task)
        return self.publish(
            NotificationEvent(
                TASK_COMPLETED,
                {"message": "Task completed", "task": asdict(snapshot)},
                recipient_user_ids=[snapshot.created_by_id] if snapshot.created_by_id else [],
                recipient_team=snapshot.team,
                admin_broadcast=True,
            )
        )

    def task_deleted(self, task_id: int, team: Optional[str] = None) -> bool:
        return self.publish(
            NotificationEvent(
                TASK_DELETED,
                {"message": "Task deleted", "task_id": task_id},
                recipient_team=team,
                admin_broadcast=True,
            )
        )

    # ============== Email ==============

    def assignment_email(
        self,
        assignee: Any,
        task: Any,
        assigned_by: Any,
        previous_assignee: Optional[Any] = None,
    ) -> bool:
        """
        Queue the email for a cross-principal assignment.

        A reassignment email is sent when the task previously belonged to
        someone else, a plain assignment email otherwise.
        """
        recipient = UserSnapshot.from_user(assignee)
        actor = UserSnapshot.from_user(assigned_by)
        snapshot = TaskSnapshot.from_task(task)

        if previous_assignee is not None and previous_assignee.id != recipient.id:
            previous_name = previous_assignee.username
            return self._enqueue(
                f"reassignment email for task {snapshot.id}",
                lambda: self.mailer.send_task_reassignment_email(recipient, snapshot, actor, previous_name),
            )
        return self._enqueue(
            f"assignment email for task {snapshot.id}",
            lambda: self.mailer.send_task_assignment_email(recipient, snapshot, actor),
        )


def build_notification_service() -> NotificationService:
    """Create the process-wide notification service from configuration."""
    if config.REDIS_URL:
        client = redis.Redis.from_url(config.REDIS_URL, socket_connect_timeout=1, socket_timeout=1)
        publisher = RedisPublisher(client, prefix=config.NOTIFICATION_CHANNEL_PREFIX)
        logger.info("Realtime notifications will be published to redis")
    else:
        publisher = LoggingPublisher()
        logger.warning("⚠️  REDIS_URL not set, realtime notifications are only logged")
    return NotificationService(publisher, Mailer.from_config())


_notification_service: Optional[NotificationService] = None


def get_notifier() -> NotificationService:
    """FastAPI dependency returning the process-wide notification service."""
    global _notification_service
    if _notification_service is None:
        _notification_service = build_notification_service()
    return _notification_service
