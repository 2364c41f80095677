"""Notification payload variants handed to the messaging transport."""
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from tasksync.models.enums import NotificationType


class InAppPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    channel: Literal["in_app"] = "in_app"
    recipient_id: str
    organization_id: str
    title: str
    content: str
    type: NotificationType = NotificationType.TASK_ASSIGNMENT
    metadata: dict[str, Any] = Field(default_factory=dict)
    self_assigned: bool = False


class EmailPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    channel: Literal["email"] = "email"
    recipient_id: str
    organization_id: str
    # resolved from the users table right before sending when not known up front
    recipient_email: Optional[str] = None
    actor_id: str
    actor_name: str
    task_id: str
    task_title: str
    link: str


NotificationPayload = Annotated[Union[InAppPayload, EmailPayload], Field(discriminator="channel")]
