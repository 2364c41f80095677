from abc import ABC, abstractmethod
import logging
from typing import Optional

import httpx

from tasksync.schemas.notifications import EmailPayload, InAppPayload

logger = logging.getLogger(__name__)


class MessagingTransport(ABC):
    """Push and email channels. Both are fire-and-forget for callers."""

    @abstractmethod
    async def send_push(self, payload: InAppPayload) -> None:
        pass

    @abstractmethod
    async def send_email(self, payload: EmailPayload) -> None:
        pass


class HttpMessagingTransport(MessagingTransport):
    def __init__(
        self,
        notification_service_url: str,
        email_service_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.notification_service_url = notification_service_url.rstrip("/")
        self.email_service_url = email_service_url.rstrip("/")
        self.timeout = timeout
        # swapped for httpx.MockTransport in tests
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def send_push(self, payload: InAppPayload) -> None:
        """Call the Notification Service to push to the recipient's devices."""
        body = {
            "user_id": payload.recipient_id,
            "organization_id": payload.organization_id,
            "title": payload.title,
            "content": payload.content,
            "type": payload.type.value,
            "metadata": payload.metadata,
        }
        async with self._client() as client:
            response = await client.post(f"{self.notification_service_url}/push", json=body)
            logger.info(f"Notification Service response status: {response.status_code}")
            response.raise_for_status()

    async def send_email(self, payload: EmailPayload) -> None:
        """Call the Email Service with the task assignment template."""
        if not payload.recipient_email:
            raise ValueError(f"No recipient email for user {payload.recipient_id}")
        body = {
            "to": payload.recipient_email,
            "template": "task_assigned",
            "data": {
                "task_id": payload.task_id,
                "task_title": payload.task_title,
                "actor_id": payload.actor_id,
                "actor_name": payload.actor_name,
                "task_url": payload.link,
            },
        }
        async with self._client() as client:
            response = await client.post(f"{self.email_service_url}/emails/task-assignment", json=body)
            logger.info(f"Email Service response status: {response.status_code}")
            response.raise_for_status()
