from sqlalchemy import Column, String, Text, DateTime, Boolean, ForeignKey, Enum as SQLEnum, func
from sqlalchemy.orm import relationship

from tasksync.core.database import Base
from tasksync.models.enums import ProjectStatus


class Project(Base):
    __tablename__ = "projects"

    project_id = Column(String(36), primary_key=True)
    organization_id = Column(String(36), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, default="")
    status = Column(SQLEnum(ProjectStatus), nullable=False, default=ProjectStatus.TODO)
    # kept alongside status for the persisted shape; always in sync with it
    is_completed = Column(Boolean, nullable=False, default=False)
    manager_id = Column(String(36), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now())

    # relationships
    members = relationship(
        "ProjectTeamMember",
        back_populates="project",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class ProjectTeamMember(Base):
    __tablename__ = "project_team_members"

    project_id = Column(String(36), ForeignKey("projects.project_id"), primary_key=True)
    user_id = Column(String(36), primary_key=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    project = relationship("Project", back_populates="members")
