from abc import ABC, abstractmethod
from typing import Any, Optional

from tasksync.models.enums import UserRole
from tasksync.schemas.notifications import InAppPayload
from tasksync.schemas.records import NotificationRecord, ProjectRecord, TaskRecord, UserRecord


class Persistence(ABC):
    """
    Row-based access to tasks, projects, users and notifications.

    Queries that take an organization_id never return rows of another
    organization. Write failures raise RemoteWriteFailure; updates of missing
    rows raise NotFound.
    """

    # --- tasks ---
    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[TaskRecord]:
        pass

    @abstractmethod
    async def list_tasks(self, organization_id: str, project_id: Optional[str] = None) -> list[TaskRecord]:
        pass

    @abstractmethod
    async def insert_task(self, task: TaskRecord) -> TaskRecord:
        pass

    @abstractmethod
    async def update_task(self, task_id: str, fields: dict[str, Any]) -> TaskRecord:
        pass

    @abstractmethod
    async def delete_task(self, task_id: str) -> None:
        pass

    # --- projects ---
    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[ProjectRecord]:
        pass

    @abstractmethod
    async def list_projects(self, organization_id: str) -> list[ProjectRecord]:
        pass

    @abstractmethod
    async def insert_project(self, project: ProjectRecord) -> ProjectRecord:
        pass

    @abstractmethod
    async def update_project(self, project_id: str, fields: dict[str, Any]) -> ProjectRecord:
        """`fields` may carry `team_member_ids`, which replaces the member set."""
        pass

    @abstractmethod
    async def delete_project(self, project_id: str) -> list[str]:
        """Delete the project and detach its tasks; returns the detached task ids."""
        pass

    # --- users ---
    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        pass

    @abstractmethod
    async def list_users(
        self,
        organization_id: str,
        role: Optional[UserRole] = None,
        exclude_user_id: Optional[str] = None,
    ) -> list[UserRecord]:
        pass

    @abstractmethod
    async def update_user_role(self, user_id: str, role: UserRole) -> UserRecord:
        pass

    # --- notifications ---
    @abstractmethod
    async def insert_notification(self, payload: InAppPayload) -> NotificationRecord:
        pass

    @abstractmethod
    async def list_notifications(self, user_id: str) -> list[NotificationRecord]:
        pass

    @abstractmethod
    async def mark_notification_read(self, notification_id: str, user_id: str) -> NotificationRecord:
        pass
