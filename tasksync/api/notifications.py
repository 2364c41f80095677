import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from tasksync.core.deps import get_current_actor, get_store, resolve_actor
from tasksync.core.exceptions import BusinessException
from tasksync.repositories.base import Persistence
from tasksync.schemas.base import ResponseEnvelope
from tasksync.schemas.records import Actor
from tasksync.services.feed import ChangeFeed
from tasksync.services.state import SessionState

router = APIRouter()
logger = logging.getLogger("api_logger")


@router.get("", response_model=ResponseEnvelope)
async def list_notifications(actor: Actor = Depends(get_current_actor), store: Persistence = Depends(get_store)):
    notifications = await store.list_notifications(actor.id)
    return ResponseEnvelope(
        success=True,
        code="NOTI_000",
        message="Notifications",
        data=[n.model_dump(mode="json") for n in notifications],
    )


@router.patch("/{notification_id}/read", response_model=ResponseEnvelope)
async def mark_notification_read(
    notification_id: str,
    actor: Actor = Depends(get_current_actor),
    store: Persistence = Depends(get_store),
):
    notification = await store.mark_notification_read(notification_id, actor.id)
    return ResponseEnvelope(
        success=True, code="NOTI_001", message="Marked as read", data=notification.model_dump(mode="json"),
    )


async def _forward_changes(websocket: WebSocket, queue: asyncio.Queue, state: SessionState) -> None:
    while True:
        event = await queue.get()
        state.apply_notification_change(event)
        await websocket.send_json({"type": "change", **event.model_dump(mode="json")})


@router.websocket("/stream")
async def notification_stream(websocket: WebSocket):
    """
    Push the actor's notification changes as they happen.
    - first message: {"type": "snapshot", "data": [unread notifications]}
    - then one {"type": "change", "kind", "table", "row"} per row change
    - browsers that cannot set headers pass the bearer token as ?token=
    """
    authorization = websocket.headers.get("authorization")
    if not authorization and websocket.query_params.get("token"):
        authorization = f"Bearer {websocket.query_params['token']}"
    try:
        actor = resolve_actor(authorization)
    except BusinessException as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
        return

    feed: ChangeFeed = websocket.app.state.feed
    orchestrator = websocket.app.state.orchestrator
    await websocket.accept()
    # subscribe before loading so nothing written in between is missed
    queue = feed.subscribe(actor.id)
    forwarder = None
    try:
        await orchestrator.refresh(actor.organization_id, user_id=actor.id)
        unread = orchestrator.state.unread_notifications(actor.id)
        await websocket.send_json({"type": "snapshot", "data": [n.model_dump(mode="json") for n in unread]})

        forwarder = asyncio.create_task(_forward_changes(websocket, queue, orchestrator.state))
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"Notification stream closed for {actor.id}")
    finally:
        if forwarder is not None:
            forwarder.cancel()
        feed.unsubscribe(actor.id, queue)
