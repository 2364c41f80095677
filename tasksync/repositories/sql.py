import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tasksync.core.exceptions import BusinessException, NotFound, RemoteWriteFailure
from tasksync.models import Notification, Project, ProjectTeamMember, Task, User
from tasksync.models.enums import UserRole
from tasksync.repositories.base import Persistence
from tasksync.schemas.notifications import InAppPayload
from tasksync.schemas.records import NotificationRecord, ProjectRecord, TaskRecord, UserRecord
from tasksync.services.feed import ChangeEvent, ChangeFeed
from tasksync.utils.timezone import ensure_utc, utc_now

logger = logging.getLogger(__name__)

_TASK_FIELDS = {
    "title", "description", "status", "priority", "deadline", "project_id",
    "assigned_to_id", "assigned_to_ids", "completed_at", "updated_at",
}
_PROJECT_FIELDS = {"title", "description", "status", "is_completed", "manager_id", "updated_at"}


def task_to_record(task: Task) -> TaskRecord:
    return TaskRecord(
        id=task.task_id,
        organization_id=task.organization_id,
        user_id=task.user_id,
        title=task.title,
        description=task.description or "",
        status=task.status,
        priority=task.priority,
        deadline=ensure_utc(task.deadline),
        project_id=task.project_id,
        assigned_to_id=task.assigned_to_id,
        assigned_to_ids=list(task.assigned_to_ids or []),
        completed_at=ensure_utc(task.completed_at),
        created_at=ensure_utc(task.created_at),
        updated_at=ensure_utc(task.updated_at),
    )


def project_to_record(project: Project) -> ProjectRecord:
    return ProjectRecord(
        id=project.project_id,
        organization_id=project.organization_id,
        title=project.title,
        description=project.description or "",
        status=project.status,
        is_completed=bool(project.is_completed),
        manager_id=project.manager_id,
        team_member_ids=sorted(member.user_id for member in project.members),
        created_at=ensure_utc(project.created_at),
        updated_at=ensure_utc(project.updated_at),
    )


def user_to_record(user: User) -> UserRecord:
    return UserRecord(
        id=user.user_id,
        organization_id=user.organization_id,
        role=user.role,
        name=user.name or "",
        email=user.email,
    )


def notification_to_record(notification: Notification) -> NotificationRecord:
    return NotificationRecord(
        id=notification.notification_id,
        user_id=notification.user_id,
        organization_id=notification.organization_id,
        title=notification.title,
        content=notification.content or "",
        type=notification.type,
        metadata=dict(notification.meta or {}),
        read=bool(notification.read),
        created_at=ensure_utc(notification.created_at),
    )


class SqlPersistence(Persistence):
    """Persistence on SQLAlchemy async sessions, one session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], feed: Optional[ChangeFeed] = None):
        self.session_factory = session_factory
        self.feed = feed

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            try:
                yield session
            except BusinessException:
                await session.rollback()
                raise
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"[DB] {operation} failed: {e}")
                raise RemoteWriteFailure(message=f"{operation} failed") from e

    async def _reload_project(self, session: AsyncSession, project_id: str) -> Project:
        # onupdate columns and the member collection are expired after commit
        return await session.get(Project, project_id, populate_existing=True)

    def _publish(self, kind: str, record: NotificationRecord) -> None:
        if self.feed is not None:
            self.feed.publish(record.user_id, ChangeEvent(
                kind=kind, table="notifications", row=record.model_dump(mode="json"),
            ))

    # --- tasks ---
    async def get_task(self, task_id: str) -> Optional[TaskRecord]:
        async with self._session("get_task") as session:
            task = await session.get(Task, task_id)
            return task_to_record(task) if task else None

    async def list_tasks(self, organization_id: str, project_id: Optional[str] = None) -> list[TaskRecord]:
        async with self._session("list_tasks") as session:
            query = select(Task).where(Task.organization_id == organization_id)
            if project_id is not None:
                query = query.where(Task.project_id == project_id)
            result = await session.execute(query.order_by(Task.created_at, Task.task_id))
            return [task_to_record(t) for t in result.scalars().all()]

    async def insert_task(self, task: TaskRecord) -> TaskRecord:
        async with self._session("insert_task") as session:
            now = utc_now()
            row = Task(
                task_id=task.id,
                organization_id=task.organization_id,
                user_id=task.user_id,
                project_id=task.project_id,
                title=task.title,
                description=task.description,
                status=task.status,
                priority=task.priority,
                deadline=task.deadline,
                assigned_to_id=task.assigned_to_id,
                assigned_to_ids=list(task.assigned_to_ids),
                completed_at=task.completed_at,
                created_at=task.created_at or now,
                updated_at=task.updated_at or now,
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return task_to_record(row)

    async def update_task(self, task_id: str, fields: dict[str, Any]) -> TaskRecord:
        unknown = set(fields) - _TASK_FIELDS
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")
        async with self._session("update_task") as session:
            row = await session.get(Task, task_id)
            if row is None:
                raise NotFound(message=f"Task {task_id} not found")
            for name, value in fields.items():
                setattr(row, name, list(value) if name == "assigned_to_ids" else value)
            await session.commit()
            await session.refresh(row)
            return task_to_record(row)

    async def delete_task(self, task_id: str) -> None:
        async with self._session("delete_task") as session:
            result = await session.execute(delete(Task).where(Task.task_id == task_id))
            if result.rowcount == 0:
                raise NotFound(message=f"Task {task_id} not found")
            await session.commit()

    # --- projects ---
    async def get_project(self, project_id: str) -> Optional[ProjectRecord]:
        async with self._session("get_project") as session:
            project = await session.get(Project, project_id)
            return project_to_record(project) if project else None

    async def list_projects(self, organization_id: str) -> list[ProjectRecord]:
        async with self._session("list_projects") as session:
            result = await session.execute(
                select(Project)
                .where(Project.organization_id == organization_id)
                .order_by(Project.created_at, Project.project_id)
            )
            return [project_to_record(p) for p in result.scalars().all()]

    async def insert_project(self, project: ProjectRecord) -> ProjectRecord:
        async with self._session("insert_project") as session:
            now = utc_now()
            row = Project(
                project_id=project.id,
                organization_id=project.organization_id,
                title=project.title,
                description=project.description,
                status=project.status,
                is_completed=project.is_completed,
                manager_id=project.manager_id,
                created_at=project.created_at or now,
                updated_at=project.updated_at or now,
            )
            row.members = [ProjectTeamMember(user_id=user_id) for user_id in dict.fromkeys(project.team_member_ids)]
            session.add(row)
            await session.commit()
            return project_to_record(await self._reload_project(session, project.id))

    async def update_project(self, project_id: str, fields: dict[str, Any]) -> ProjectRecord:
        fields = dict(fields)
        member_ids = fields.pop("team_member_ids", None)
        unknown = set(fields) - _PROJECT_FIELDS
        if unknown:
            raise ValueError(f"Unknown project fields: {sorted(unknown)}")
        async with self._session("update_project") as session:
            row = await session.get(Project, project_id)
            if row is None:
                raise NotFound(message=f"Project {project_id} not found")
            for name, value in fields.items():
                setattr(row, name, value)
            if member_ids is not None:
                current = {member.user_id: member for member in row.members}
                wanted = list(dict.fromkeys(member_ids))
                row.members = [current.get(user_id) or ProjectTeamMember(user_id=user_id) for user_id in wanted]
            await session.commit()
            return project_to_record(await self._reload_project(session, project_id))

    async def delete_project(self, project_id: str) -> list[str]:
        async with self._session("delete_project") as session:
            row = await session.get(Project, project_id)
            if row is None:
                raise NotFound(message=f"Project {project_id} not found")
            result = await session.execute(select(Task.task_id).where(Task.project_id == project_id))
            detached = list(result.scalars().all())
            # tasks outlive their project
            await session.execute(update(Task).where(Task.project_id == project_id).values(project_id=None))
            await session.delete(row)
            await session.commit()
            logger.info(f"[DB] project {project_id} deleted, {len(detached)} tasks detached")
            return detached

    # --- users ---
    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        async with self._session("get_user") as session:
            user = await session.get(User, user_id)
            return user_to_record(user) if user else None

    async def list_users(
        self,
        organization_id: str,
        role: Optional[UserRole] = None,
        exclude_user_id: Optional[str] = None,
    ) -> list[UserRecord]:
        async with self._session("list_users") as session:
            query = select(User).where(User.organization_id == organization_id)
            if role is not None:
                query = query.where(User.role == role)
            if exclude_user_id is not None:
                query = query.where(User.user_id != exclude_user_id)
            result = await session.execute(query.order_by(User.user_id))
            return [user_to_record(u) for u in result.scalars().all()]

    async def update_user_role(self, user_id: str, role: UserRole) -> UserRecord:
        async with self._session("update_user_role") as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFound(message=f"User {user_id} not found")
            user.role = role
            user.updated_at = utc_now()
            await session.commit()
            await session.refresh(user)
            return user_to_record(user)

    # --- notifications ---
    async def insert_notification(self, payload: InAppPayload) -> NotificationRecord:
        async with self._session("insert_notification") as session:
            row = Notification(
                notification_id=str(uuid.uuid4()),
                user_id=payload.recipient_id,
                organization_id=payload.organization_id,
                title=payload.title,
                content=payload.content,
                type=payload.type,
                meta=dict(payload.metadata),
                read=False,
                created_at=utc_now(),
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
            record = notification_to_record(row)
        self._publish("INSERT", record)
        return record

    async def list_notifications(self, user_id: str) -> list[NotificationRecord]:
        async with self._session("list_notifications") as session:
            result = await session.execute(
                select(Notification)
                .where(Notification.user_id == user_id)
                .order_by(Notification.created_at.desc())
            )
            return [notification_to_record(n) for n in result.scalars().all()]

    async def mark_notification_read(self, notification_id: str, user_id: str) -> NotificationRecord:
        async with self._session("mark_notification_read") as session:
            row = await session.get(Notification, notification_id)
            if row is None or row.user_id != user_id:
                raise NotFound(message=f"Notification {notification_id} not found")
            row.read = True
            await session.commit()
            await session.refresh(row)
            record = notification_to_record(row)
        self._publish("UPDATE", record)
        return record
