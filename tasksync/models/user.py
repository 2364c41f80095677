from sqlalchemy import Column, String, DateTime, Enum as SQLEnum, func

from tasksync.core.database import Base
from tasksync.models.enums import UserRole


class User(Base):
    __tablename__ = "users"

    user_id = Column(String(36), primary_key=True)
    organization_id = Column(String(36), nullable=False, index=True)
    email = Column(String(255), nullable=True)
    name = Column(String(100), nullable=False, default="")
    role = Column(SQLEnum(UserRole), nullable=False, default=UserRole.USER)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<User(user_id={self.user_id}, role='{self.role}')>"
