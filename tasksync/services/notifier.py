"""
Assignment notification fan-out.

Every recipient gets one in-app notification; recipients other than the
actor also get one email. Recipients are dispatched independently and
failures are only logged.
"""
import asyncio
import logging
from typing import Iterable, Optional

from tasksync.adapters.messaging import MessagingTransport
from tasksync.core.exceptions import NotificationDispatchFailure
from tasksync.models.enums import NotificationType
from tasksync.repositories.base import Persistence
from tasksync.schemas.notifications import EmailPayload, InAppPayload, NotificationPayload
from tasksync.schemas.records import Actor, TaskRecord

logger = logging.getLogger(__name__)

TASKS_ROUTE = "/dashboard/tasks"


def unique_recipients(assignee_ids: Iterable[Optional[str]]) -> list[str]:
    """Drop blanks and duplicates, keeping first-seen order."""
    seen: list[str] = []
    for user_id in assignee_ids:
        if user_id and user_id not in seen:
            seen.append(user_id)
    return seen


class AssignmentNotifier:
    def __init__(
        self,
        store: Persistence,
        transport: MessagingTransport,
        app_base_url: str,
        enabled: bool = True,
    ):
        self.store = store
        self.transport = transport
        self.app_base_url = app_base_url.rstrip("/")
        self.enabled = enabled

    def task_link(self, task: TaskRecord) -> str:
        return f"{self.app_base_url}{TASKS_ROUTE}/{task.id}"

    def plan(
        self, task: TaskRecord, assignee_ids: Iterable[Optional[str]], actor: Actor, organization_id: str
    ) -> list[NotificationPayload]:
        recipients = unique_recipients(assignee_ids)
        payloads: list[NotificationPayload] = []
        metadata = {"task_id": task.id, "actor_id": actor.id, "route": TASKS_ROUTE}

        for user_id in recipients:
            self_assigned = user_id == actor.id
            if self_assigned:
                content = f"You assigned yourself to: {task.title}"
            else:
                content = f"You've been assigned to: {task.title}"
            payloads.append(InAppPayload(
                recipient_id=user_id,
                organization_id=organization_id,
                title="Task Assigned",
                content=content,
                type=NotificationType.TASK_ASSIGNMENT,
                metadata=metadata,
                self_assigned=self_assigned,
            ))

        for user_id in recipients:
            if user_id == actor.id:
                continue
            payloads.append(EmailPayload(
                recipient_id=user_id,
                organization_id=organization_id,
                actor_id=actor.id,
                actor_name=actor.name or actor.email or actor.id,
                task_id=task.id,
                task_title=task.title,
                link=self.task_link(task),
            ))
        return payloads

    async def notify_assignment(
        self, task: TaskRecord, assignee_ids: Iterable[Optional[str]], actor: Actor, organization_id: str
    ) -> list[NotificationPayload]:
        """Dispatch every payload; returns the payloads that went out."""
        if not self.enabled:
            logger.info(f"[Notifications] disabled, skipping assignment fan-out for task {task.id}")
            return []

        payloads = self.plan(task, assignee_ids, actor, organization_id)
        if not payloads:
            return []

        results = await asyncio.gather(
            *(self.dispatch(payload) for payload in payloads),
            return_exceptions=True,
        )
        delivered: list[NotificationPayload] = []
        for payload, result in zip(payloads, results):
            if isinstance(result, BaseException):
                failure = NotificationDispatchFailure(
                    message=f"{payload.channel} notification to {payload.recipient_id} failed: {result}"
                )
                logger.error(f"[Notifications] task {task.id}: {failure.message}")
            elif result:
                delivered.append(payload)
        logger.info(f"[Notifications] task {task.id}: {len(delivered)}/{len(payloads)} notifications sent")
        return delivered

    async def dispatch(self, payload: NotificationPayload) -> bool:
        if isinstance(payload, InAppPayload):
            await self.store.insert_notification(payload)
            await self.transport.send_push(payload)
            return True
        if isinstance(payload, EmailPayload):
            if not payload.recipient_email:
                user = await self.store.get_user(payload.recipient_id)
                if user is None or not user.email:
                    logger.warning(f"[Notifications] no email address for user {payload.recipient_id}, skipping")
                    return False
                payload = payload.model_copy(update={"recipient_email": user.email})
            await self.transport.send_email(payload)
            return True
        raise TypeError(f"Unsupported notification payload: {type(payload).__name__}")
