from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from tasksync.models.enums import TaskStatus, UserRole
from tasksync.schemas.records import ProjectRecord, TaskRecord


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)


class TaskStatusChanged(DomainEvent):
    type: Literal["TaskStatusChanged"] = "TaskStatusChanged"
    task: TaskRecord
    old_status: TaskStatus
    new_status: TaskStatus


class TaskCompleted(DomainEvent):
    type: Literal["TaskCompleted"] = "TaskCompleted"
    task: TaskRecord


class TaskReopened(DomainEvent):
    type: Literal["TaskReopened"] = "TaskReopened"
    task: TaskRecord


class ProjectAutoCompleted(DomainEvent):
    type: Literal["ProjectAutoCompleted"] = "ProjectAutoCompleted"
    project: ProjectRecord


class UserRoleChanged(DomainEvent):
    type: Literal["UserRoleChanged"] = "UserRoleChanged"
    user_id: str
    old_role: UserRole
    new_role: UserRole


class SuperadminTransferred(DomainEvent):
    type: Literal["SuperadminTransferred"] = "SuperadminTransferred"
    from_user_id: Optional[str]
    to_user_id: str
    demoted_at: Optional[datetime] = None


Event = Union[
    TaskStatusChanged,
    TaskCompleted,
    TaskReopened,
    ProjectAutoCompleted,
    UserRoleChanged,
    SuperadminTransferred,
]
