from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from tasksync.models.enums import NotificationType, ProjectStatus, TaskPriority, TaskStatus, UserRole


class Actor(BaseModel):
    """The authenticated caller, as supplied by the identity provider."""
    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str
    # kept as a plain string: unknown roles must resolve to least privilege
    role: str
    name: str = ""
    email: Optional[str] = None


class UserRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str
    role: UserRole = UserRole.USER
    name: str = ""
    email: Optional[str] = None


class TaskRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str
    user_id: str  # creator
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    deadline: Optional[datetime] = None
    project_id: Optional[str] = None
    assigned_to_id: Optional[str] = None
    assigned_to_ids: list[str] = Field(default_factory=list)
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def assignee_ids(self) -> list[str]:
        """Single and multi assignee fields merged, first occurrence wins."""
        ids: list[str] = []
        for user_id in [self.assigned_to_id, *self.assigned_to_ids]:
            if user_id and user_id not in ids:
                ids.append(user_id)
        return ids

    @property
    def personal_view_user_ids(self) -> set[str]:
        # unassigned tasks show up in the creator's personal list
        return set(self.assignee_ids) or {self.user_id}


class ProjectRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str
    title: str
    description: str = ""
    status: ProjectStatus = ProjectStatus.TODO
    is_completed: bool = False
    manager_id: str
    team_member_ids: list[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class NotificationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    organization_id: str
    title: str
    content: str = ""
    type: NotificationType = NotificationType.TASK_ASSIGNMENT
    metadata: dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    created_at: Optional[datetime] = None


class RoleChangeRequest(BaseModel):
    """Resolved role change; never persisted."""

    target_user_id: str
    current_role: UserRole
    requested_role: UserRole
    requires_superadmin_transfer: bool = False
    current_superadmin_id: Optional[str] = None
