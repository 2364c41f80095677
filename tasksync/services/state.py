"""
Local session state: the confirmed rows a client currently holds.

Only the orchestrator writes here, and only after the remote write for the
same change has been acknowledged.
"""
import logging
from typing import Iterable, Optional

from tasksync.schemas.records import NotificationRecord, ProjectRecord, TaskRecord, UserRecord
from tasksync.services.feed import ChangeEvent

logger = logging.getLogger(__name__)


class SessionState:
    def __init__(self):
        self.tasks: dict[str, TaskRecord] = {}
        self.projects: dict[str, ProjectRecord] = {}
        self.users: dict[str, UserRecord] = {}
        self.notifications: dict[str, NotificationRecord] = {}

    def hydrate(
        self,
        tasks: Iterable[TaskRecord] = (),
        projects: Iterable[ProjectRecord] = (),
        users: Iterable[UserRecord] = (),
        notifications: Iterable[NotificationRecord] = (),
    ) -> None:
        for task in tasks:
            self.tasks[task.id] = task
        for project in projects:
            self.projects[project.id] = project
        for user in users:
            self.users[user.id] = user
        for notification in notifications:
            self.notifications[notification.id] = notification

    def snapshot(self) -> dict:
        return {
            "tasks": dict(self.tasks),
            "projects": dict(self.projects),
            "users": dict(self.users),
            "notifications": dict(self.notifications),
        }

    def upsert_task(self, task: TaskRecord) -> None:
        self.tasks[task.id] = task

    def remove_task(self, task_id: str) -> Optional[TaskRecord]:
        return self.tasks.pop(task_id, None)

    def upsert_project(self, project: ProjectRecord) -> None:
        self.projects[project.id] = project

    def remove_project(self, project_id: str) -> Optional[ProjectRecord]:
        return self.projects.pop(project_id, None)

    def upsert_user(self, user: UserRecord) -> None:
        self.users[user.id] = user

    def tasks_for_project(self, project_id: str) -> list[TaskRecord]:
        return [t for t in self.tasks.values() if t.project_id == project_id]

    def detach_project(self, project_id: str) -> list[str]:
        detached = []
        for task in self.tasks_for_project(project_id):
            self.tasks[task.id] = task.model_copy(update={"project_id": None})
            detached.append(task.id)
        return detached

    def unread_notifications(self, user_id: str) -> list[NotificationRecord]:
        return [n for n in self.notifications.values() if n.user_id == user_id and not n.read]

    def apply_notification_change(self, event: ChangeEvent) -> None:
        """Merge a change-feed event for the notifications table."""
        if event.table != "notifications":
            logger.debug(f"[SessionState] ignoring change on {event.table}")
            return
        if event.kind == "DELETE":
            self.notifications.pop(event.row.get("id"), None)
            return
        record = NotificationRecord.model_validate(event.row)
        self.notifications[record.id] = record
