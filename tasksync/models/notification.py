from sqlalchemy import Column, String, Text, DateTime, Boolean, JSON, Enum as SQLEnum, func

from tasksync.core.database import Base
from tasksync.models.enums import NotificationType


class Notification(Base):
    __tablename__ = "notifications"

    notification_id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    organization_id = Column(String(36), nullable=False)
    title = Column(String(255), nullable=False)
    content = Column(Text, default="")
    type = Column(SQLEnum(NotificationType), nullable=False)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
