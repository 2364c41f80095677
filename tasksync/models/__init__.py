from tasksync.models.user import User
from tasksync.models.project import Project, ProjectTeamMember
from tasksync.models.task import Task
from tasksync.models.notification import Notification

__all__ = ["User", "Project", "ProjectTeamMember", "Task", "Notification"]
