"""
Task status transitions and the project completion cascade.

Every status is reachable from every other one. Project completion is a
ratchet: it is set automatically when all tasks are completed, and is never
cleared by this module.
"""
from datetime import datetime
from typing import Iterable, Optional

from tasksync.models.enums import ProjectStatus, TaskStatus
from tasksync.schemas.events import (
    Event,
    ProjectAutoCompleted,
    TaskCompleted,
    TaskReopened,
    TaskStatusChanged,
)
from tasksync.schemas.records import ProjectRecord, TaskRecord


class TaskStateMachine:
    def apply(
        self, task: TaskRecord, new_status: TaskStatus, now: datetime
    ) -> tuple[TaskRecord, list[Event]]:
        old_status = task.status
        events: list[Event] = []

        if new_status == TaskStatus.COMPLETED:
            # re-completing keeps the original completion time
            completed_at = task.completed_at if old_status == TaskStatus.COMPLETED and task.completed_at else now
        else:
            completed_at = None

        updated = task.model_copy(update={
            "status": new_status,
            "completed_at": completed_at,
            "updated_at": now if new_status != old_status else task.updated_at,
        })

        if new_status == TaskStatus.COMPLETED and old_status != TaskStatus.COMPLETED:
            events.append(TaskCompleted(task=updated))
        elif new_status != TaskStatus.COMPLETED and old_status == TaskStatus.COMPLETED:
            events.append(TaskReopened(task=updated))
        events.append(TaskStatusChanged(task=updated, old_status=old_status, new_status=new_status))
        return updated, events

    def recompute_project_completion(
        self, project: ProjectRecord, tasks: Iterable[TaskRecord], now: Optional[datetime] = None
    ) -> tuple[Optional[ProjectRecord], Optional[ProjectAutoCompleted]]:
        project_tasks = [t for t in tasks if t.project_id == project.id]
        if not project_tasks:
            return None, None
        if project.status == ProjectStatus.COMPLETED:
            return None, None
        if any(t.status != TaskStatus.COMPLETED for t in project_tasks):
            return None, None

        completed = project.model_copy(update={
            "status": ProjectStatus.COMPLETED,
            "is_completed": True,
            "updated_at": now or project.updated_at,
        })
        return completed, ProjectAutoCompleted(project=completed)
