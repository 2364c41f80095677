"""
Mutation actions accepted by MutationOrchestrator.execute.

The set is closed; `kind` is the discriminator both for the API body and for
the orchestrator's handler lookup.
"""
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from tasksync.models.enums import ProjectStatus, TaskPriority, TaskStatus, UserRole


class CreateTask(BaseModel):
    kind: Literal["CreateTask"] = "CreateTask"
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    deadline: Optional[datetime] = None
    project_id: Optional[str] = None
    assignee_ids: list[str] = Field(default_factory=list)


class UpdateTask(BaseModel):
    """Partial update; only fields explicitly set are written."""
    kind: Literal["UpdateTask"] = "UpdateTask"
    task_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    deadline: Optional[datetime] = None
    project_id: Optional[str] = None

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude={"kind", "task_id"})


class ChangeTaskStatus(BaseModel):
    kind: Literal["ChangeTaskStatus"] = "ChangeTaskStatus"
    task_id: str
    status: TaskStatus


class DeleteTask(BaseModel):
    kind: Literal["DeleteTask"] = "DeleteTask"
    task_id: str


class AssignTask(BaseModel):
    kind: Literal["AssignTask"] = "AssignTask"
    task_id: str
    # empty list unassigns the task
    assignee_ids: list[str] = Field(default_factory=list)


class CreateProject(BaseModel):
    kind: Literal["CreateProject"] = "CreateProject"
    title: str
    description: str = ""
    manager_id: Optional[str] = None
    team_member_ids: list[str] = Field(default_factory=list)


class UpdateProject(BaseModel):
    kind: Literal["UpdateProject"] = "UpdateProject"
    project_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None
    manager_id: Optional[str] = None
    team_member_ids: Optional[list[str]] = None

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude={"kind", "project_id"})


class DeleteProject(BaseModel):
    kind: Literal["DeleteProject"] = "DeleteProject"
    project_id: str


class ChangeUserRole(BaseModel):
    kind: Literal["ChangeUserRole"] = "ChangeUserRole"
    target_user_id: str
    new_role: UserRole


MutationAction = Annotated[
    Union[
        CreateTask,
        UpdateTask,
        ChangeTaskStatus,
        DeleteTask,
        AssignTask,
        CreateProject,
        UpdateProject,
        DeleteProject,
        ChangeUserRole,
    ],
    Field(discriminator="kind"),
]
