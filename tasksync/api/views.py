from typing import Optional

from fastapi import APIRouter, Depends

from tasksync.core.deps import get_current_actor, get_view_cache, get_view_loader
from tasksync.core.exceptions import NotFound, ValidationFailed
from tasksync.schemas.base import ResponseEnvelope
from tasksync.schemas.records import Actor
from tasksync.services.cache import STALE, ViewCache, ViewTemplate
from tasksync.services.views import ViewLoader

router = APIRouter()


def resolve_template(name: str) -> ViewTemplate:
    try:
        return ViewTemplate.by_name(name)
    except KeyError:
        raise NotFound(message=f"Unknown view: {name}")


def check_organization(actor: Actor, organization_id: Optional[str]) -> str:
    organization_id = organization_id or actor.organization_id
    # views of other tenants do not exist for this actor
    if organization_id != actor.organization_id:
        raise NotFound(message=f"Unknown organization: {organization_id}")
    return organization_id


@router.get("/{name}", response_model=ResponseEnvelope)
async def get_cached_view(
    name: str,
    organization_id: Optional[str] = None,
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
    actor: Actor = Depends(get_current_actor),
    cache: ViewCache = Depends(get_view_cache),
):
    """Read a cached view; never touches the database."""
    template = resolve_template(name)
    values = {
        "organization_id": check_organization(actor, organization_id),
        "user_id": user_id,
        "project_id": project_id,
    }
    missing = [p for p in template.params if not values[p]]
    if missing:
        raise ValidationFailed(message=f"View {name} requires {', '.join(missing)}")
    key = template.key(**{p: values[p] for p in template.params})

    value = cache.get(key)
    if value is STALE:
        return ResponseEnvelope(success=True, code="VIEW_001", message="Stale", data={"key": list(key), "stale": True})
    return ResponseEnvelope(
        success=True, code="VIEW_000", message="Cached", data={"key": list(key), "stale": False, "value": value},
    )


@router.post("/{name}/load", response_model=ResponseEnvelope)
async def load_view(
    name: str,
    organization_id: Optional[str] = None,
    user_id: Optional[str] = None,
    project_id: Optional[str] = None,
    actor: Actor = Depends(get_current_actor),
    loader: ViewLoader = Depends(get_view_loader),
):
    """Fetch a view from the store and put it into the cache."""
    template = resolve_template(name)
    key, value, cached = await loader.load(
        template, check_organization(actor, organization_id), user_id=user_id, project_id=project_id,
    )
    return ResponseEnvelope(
        success=True, code="VIEW_002", message="Loaded", data={"key": list(key), "stale": not cached, "value": value},
    )
