from enum import Enum


# User roles (ordered by authority in services.role_hierarchy)
class UserRole(str, Enum):
    USER = "user"
    TEAM_LEADER = "team_leader"
    MANAGER = "manager"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


# Task status
class TaskStatus(str, Enum):
    TODO = "To Do"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"


# Task priority
class TaskPriority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


# Project status
class ProjectStatus(str, Enum):
    TODO = "To Do"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"


class NotificationType(str, Enum):
    TASK_ASSIGNMENT = "task_assignment"


# Mutation kinds drive cache invalidation
class MutationKind(str, Enum):
    TASK_CREATED = "TaskCreated"
    TASK_UPDATED = "TaskUpdated"
    TASK_STATUS_CHANGED = "TaskStatusChanged"
    TASK_DELETED = "TaskDeleted"
    TASK_ASSIGNED = "TaskAssigned"
    PROJECT_CREATED = "ProjectCreated"
    PROJECT_UPDATED = "ProjectUpdated"
    PROJECT_DELETED = "ProjectDeleted"
    PROJECT_AUTO_COMPLETED = "ProjectAutoCompleted"
    USER_ROLE_CHANGED = "UserRoleChanged"
