"""
Task model.
A task belongs to an organization and optionally references a project.
"""
from sqlalchemy import Column, String, Text, DateTime, JSON, ForeignKey, Enum as SQLEnum, func

from tasksync.core.database import Base
from tasksync.models.enums import TaskStatus, TaskPriority


class Task(Base):
    __tablename__ = "tasks"

    task_id = Column(String(36), primary_key=True)
    organization_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False)  # creator
    project_id = Column(String(36), ForeignKey("projects.project_id", ondelete="SET NULL"), nullable=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, default="")
    status = Column(SQLEnum(TaskStatus), nullable=False, default=TaskStatus.TODO)
    priority = Column(SQLEnum(TaskPriority), nullable=False, default=TaskPriority.MEDIUM)
    deadline = Column(DateTime(timezone=True))
    assigned_to_id = Column(String(36), nullable=True)
    assigned_to_ids = Column(JSON, nullable=False, default=list)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Task(task_id={self.task_id}, title='{self.title}', status='{self.status}')>"
