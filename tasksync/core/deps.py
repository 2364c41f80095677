import base64
import json
import logging
from typing import Optional

from fastapi import Header, Request

from tasksync.core.exceptions import BusinessException, ErrorCode
from tasksync.repositories.base import Persistence
from tasksync.schemas.records import Actor
from tasksync.services.cache import ViewCache
from tasksync.services.orchestrator import MutationOrchestrator
from tasksync.services.views import ViewLoader

logger = logging.getLogger(__name__)


def decode_jwt_payload(token: str) -> dict:
    """Extract the JWT payload without verifying the signature."""
    parts = token.split(".")
    if len(parts) < 2:
        raise ValueError("Malformed token")
    payload_b64 = parts[1]
    padding = 4 - len(payload_b64) % 4
    if padding != 4:
        payload_b64 += "=" * padding
    payload = json.loads(base64.urlsafe_b64decode(payload_b64))
    if not isinstance(payload, dict):
        raise ValueError("Token payload is not an object")
    return payload


def resolve_actor(authorization: Optional[str]) -> Actor:
    """
    Build the acting user from an Authorization header value.
    - Bearer token payload carries sub, role, organization_id, email, name
    - the token is trusted as issued; enforcement happens in the identity provider
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise BusinessException(ErrorCode.UNAUTHENTICATED)
    token = authorization.replace("Bearer ", "", 1)
    try:
        payload = decode_jwt_payload(token)
    except ValueError as e:
        logger.warning(f"Token parsing failed: {e}")
        raise BusinessException(ErrorCode.UNAUTHENTICATED, "Invalid token") from e

    user_id = payload.get("sub")
    organization_id = payload.get("organization_id")
    if not user_id or not organization_id:
        logger.warning(f"Token without sub/organization_id: keys={sorted(payload)}")
        raise BusinessException(ErrorCode.UNAUTHENTICATED, "Token is missing identity claims")

    return Actor(
        id=str(user_id),
        organization_id=str(organization_id),
        role=str(payload.get("role") or ""),
        name=payload.get("name") or "",
        email=payload.get("email"),
    )


async def get_current_actor(authorization: Optional[str] = Header(None)) -> Actor:
    return resolve_actor(authorization)


def get_orchestrator(request: Request) -> MutationOrchestrator:
    return request.app.state.orchestrator


def get_view_cache(request: Request) -> ViewCache:
    return request.app.state.view_cache


def get_view_loader(request: Request) -> ViewLoader:
    return request.app.state.view_loader


def get_store(request: Request) -> Persistence:
    return request.app.state.store
