"""Shared fakes and factories for the test-suite."""
import itertools
from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from tasksync.adapters.messaging import MessagingTransport
from tasksync.core.exceptions import NotFound, RemoteWriteFailure
from tasksync.models.enums import ProjectStatus, TaskStatus, UserRole
from tasksync.repositories.base import Persistence
from tasksync.schemas.notifications import EmailPayload, InAppPayload
from tasksync.schemas.records import Actor, NotificationRecord, ProjectRecord, TaskRecord, UserRecord
from tasksync.services.background import BackgroundDispatcher
from tasksync.services.cache import CacheInvalidator, ViewCache
from tasksync.services.feed import ChangeEvent, ChangeFeed
from tasksync.services.notifier import AssignmentNotifier
from tasksync.services.orchestrator import MutationOrchestrator
from tasksync.services.state import SessionState

ORG = "org-1"
OTHER_ORG = "org-2"
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
EARLIER = datetime(2024, 4, 1, 9, 0, tzinfo=timezone.utc)


class FakeStore(Persistence):
    """In-memory persistence that records every call and fails on demand."""

    WRITE_METHODS = {
        "insert_task", "update_task", "delete_task",
        "insert_project", "update_project", "delete_project",
        "update_user_role", "insert_notification", "mark_notification_read",
    }

    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.feed = feed
        self.tasks: dict[str, TaskRecord] = {}
        self.projects: dict[str, ProjectRecord] = {}
        self.users: dict[str, UserRecord] = {}
        self.notifications: dict[str, NotificationRecord] = {}
        self.calls: list[tuple[str, tuple]] = []
        self.failures: dict[Any, int] = {}
        self._ids = itertools.count(1)

    # --- test helpers ---
    def seed(self, *records: Any) -> None:
        for record in records:
            if isinstance(record, TaskRecord):
                self.tasks[record.id] = record
            elif isinstance(record, ProjectRecord):
                self.projects[record.id] = record
            elif isinstance(record, UserRecord):
                self.users[record.id] = record
            else:
                raise TypeError(record)

    def fail(self, method: str, times: int = 1_000_000, key: Optional[str] = None) -> None:
        """Make `method` raise RemoteWriteFailure; with `key`, only for calls whose first argument is `key`."""
        self.failures[(method, key) if key else method] = times

    @property
    def method_calls(self) -> list[str]:
        return [name for name, _ in self.calls]

    @property
    def writes(self) -> list[str]:
        return [name for name in self.method_calls if name in self.WRITE_METHODS]

    def _enter(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        keyed = (method, args[0]) if args and isinstance(args[0], str) else None
        slot = keyed if keyed in self.failures else method
        remaining = self.failures.get(slot, 0)
        if remaining:
            self.failures[slot] = remaining - 1
            raise RemoteWriteFailure(message=f"{method} failed")

    def _publish(self, kind: str, record: NotificationRecord) -> None:
        if self.feed is not None:
            self.feed.publish(record.user_id, ChangeEvent(
                kind=kind, table="notifications", row=record.model_dump(mode="json"),
            ))

    # --- tasks ---
    async def get_task(self, task_id: str) -> Optional[TaskRecord]:
        self._enter("get_task", task_id)
        return self.tasks.get(task_id)

    async def list_tasks(self, organization_id: str, project_id: Optional[str] = None) -> list[TaskRecord]:
        self._enter("list_tasks", organization_id, project_id)
        return [
            t for t in self.tasks.values()
            if t.organization_id == organization_id and (project_id is None or t.project_id == project_id)
        ]

    async def insert_task(self, task: TaskRecord) -> TaskRecord:
        self._enter("insert_task", task)
        self.tasks[task.id] = task
        return task

    async def update_task(self, task_id: str, fields: dict[str, Any]) -> TaskRecord:
        self._enter("update_task", task_id, fields)
        if task_id not in self.tasks:
            raise NotFound(message=f"Task {task_id} not found")
        self.tasks[task_id] = self.tasks[task_id].model_copy(update=fields)
        return self.tasks[task_id]

    async def delete_task(self, task_id: str) -> None:
        self._enter("delete_task", task_id)
        if self.tasks.pop(task_id, None) is None:
            raise NotFound(message=f"Task {task_id} not found")

    # --- projects ---
    async def get_project(self, project_id: str) -> Optional[ProjectRecord]:
        self._enter("get_project", project_id)
        return self.projects.get(project_id)

    async def list_projects(self, organization_id: str) -> list[ProjectRecord]:
        self._enter("list_projects", organization_id)
        return [p for p in self.projects.values() if p.organization_id == organization_id]

    async def insert_project(self, project: ProjectRecord) -> ProjectRecord:
        self._enter("insert_project", project)
        self.projects[project.id] = project
        return project

    async def update_project(self, project_id: str, fields: dict[str, Any]) -> ProjectRecord:
        self._enter("update_project", project_id, fields)
        if project_id not in self.projects:
            raise NotFound(message=f"Project {project_id} not found")
        self.projects[project_id] = self.projects[project_id].model_copy(update=fields)
        return self.projects[project_id]

    async def delete_project(self, project_id: str) -> list[str]:
        self._enter("delete_project", project_id)
        if self.projects.pop(project_id, None) is None:
            raise NotFound(message=f"Project {project_id} not found")
        detached = []
        for task in list(self.tasks.values()):
            if task.project_id == project_id:
                self.tasks[task.id] = task.model_copy(update={"project_id": None})
                detached.append(task.id)
        return detached

    # --- users ---
    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        self._enter("get_user", user_id)
        return self.users.get(user_id)

    async def list_users(
        self,
        organization_id: str,
        role: Optional[UserRole] = None,
        exclude_user_id: Optional[str] = None,
    ) -> list[UserRecord]:
        self._enter("list_users", organization_id, role, exclude_user_id)
        return [
            u for u in self.users.values()
            if u.organization_id == organization_id
            and (role is None or u.role == role)
            and u.id != exclude_user_id
        ]

    async def update_user_role(self, user_id: str, role: UserRole) -> UserRecord:
        self._enter("update_user_role", user_id, role)
        if user_id not in self.users:
            raise NotFound(message=f"User {user_id} not found")
        self.users[user_id] = self.users[user_id].model_copy(update={"role": role})
        return self.users[user_id]

    # --- notifications ---
    async def insert_notification(self, payload: InAppPayload) -> NotificationRecord:
        self._enter("insert_notification", payload)
        record = NotificationRecord(
            id=f"n-{next(self._ids)}",
            user_id=payload.recipient_id,
            organization_id=payload.organization_id,
            title=payload.title,
            content=payload.content,
            type=payload.type,
            metadata=payload.metadata,
            created_at=NOW,
        )
        self.notifications[record.id] = record
        self._publish("INSERT", record)
        return record

    async def list_notifications(self, user_id: str) -> list[NotificationRecord]:
        self._enter("list_notifications", user_id)
        return [n for n in self.notifications.values() if n.user_id == user_id]

    async def mark_notification_read(self, notification_id: str, user_id: str) -> NotificationRecord:
        self._enter("mark_notification_read", notification_id, user_id)
        record = self.notifications.get(notification_id)
        if record is None or record.user_id != user_id:
            raise NotFound(message=f"Notification {notification_id} not found")
        self.notifications[notification_id] = record.model_copy(update={"read": True})
        self._publish("UPDATE", self.notifications[notification_id])
        return self.notifications[notification_id]


class RecordingTransport(MessagingTransport):
    def __init__(self, failing_recipients: Optional[set[str]] = None):
        self.pushes: list[InAppPayload] = []
        self.emails: list[EmailPayload] = []
        self.failing_recipients = failing_recipients or set()

    async def send_push(self, payload: InAppPayload) -> None:
        if payload.recipient_id in self.failing_recipients:
            raise ConnectionError(f"push to {payload.recipient_id} refused")
        self.pushes.append(payload)

    async def send_email(self, payload: EmailPayload) -> None:
        if payload.recipient_id in self.failing_recipients:
            raise ConnectionError(f"email to {payload.recipient_id} refused")
        self.emails.append(payload)


class FailingCache(ViewCache):
    async def invalidate_many(self, keys) -> None:
        raise ConnectionError("cache backend unavailable")


def make_actor(user_id: str = "u-actor", role: str = "manager", organization_id: str = ORG, **extra) -> Actor:
    return Actor(id=user_id, organization_id=organization_id, role=role, name=extra.pop("name", user_id), **extra)


def make_user(user_id: str, role: UserRole = UserRole.USER, organization_id: str = ORG) -> UserRecord:
    return UserRecord(id=user_id, organization_id=organization_id, role=role, name=user_id, email=f"{user_id}@example.com")


def make_task(task_id: str = "t-1", **overrides) -> TaskRecord:
    values = dict(
        id=task_id,
        organization_id=ORG,
        user_id="u-creator",
        title=f"Task {task_id}",
        status=TaskStatus.TODO,
        created_at=EARLIER,
        updated_at=EARLIER,
    )
    values.update(overrides)
    if values["status"] == TaskStatus.COMPLETED and "completed_at" not in overrides:
        values["completed_at"] = EARLIER
    return TaskRecord(**values)


def make_project(project_id: str = "p-1", **overrides) -> ProjectRecord:
    values = dict(
        id=project_id,
        organization_id=ORG,
        title=f"Project {project_id}",
        status=ProjectStatus.IN_PROGRESS,
        manager_id="u-pm",
        created_at=EARLIER,
        updated_at=EARLIER,
    )
    values.update(overrides)
    return ProjectRecord(**values)


class Harness:
    def __init__(
        self,
        cache: Optional[ViewCache] = None,
        notifications_enabled: bool = True,
        store: Optional[FakeStore] = None,
    ):
        self.store = store or FakeStore()
        self.transport = RecordingTransport()
        self.state = SessionState()
        self.cache = cache or ViewCache()
        self.dispatcher = BackgroundDispatcher()
        self.notifier = AssignmentNotifier(
            self.store, self.transport, "https://app.example.com", enabled=notifications_enabled,
        )
        self.orchestrator = MutationOrchestrator(
            store=self.store,
            state=self.state,
            notifier=self.notifier,
            invalidator=CacheInvalidator(self.cache),
            dispatcher=self.dispatcher,
            clock=lambda: NOW,
            demote_attempts=3,
            demote_wait_seconds=0,
        )

    async def run(self, action, actor: Actor):
        result = await self.orchestrator.execute(action, actor)
        await self.dispatcher.drain()
        return result


@pytest.fixture
def harness() -> Harness:
    return Harness()
