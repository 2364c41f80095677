import logging

from fastapi import APIRouter, Body, Depends
from pydantic import TypeAdapter, ValidationError

from tasksync.core.deps import get_current_actor, get_orchestrator
from tasksync.core.exceptions import FAILURE_EXCEPTIONS, BusinessException, ValidationFailed
from tasksync.schemas.actions import MutationAction
from tasksync.schemas.base import ResponseEnvelope
from tasksync.schemas.records import Actor
from tasksync.services.orchestrator import MutationOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)

_action_adapter = TypeAdapter(MutationAction)


def parse_action(payload: dict) -> MutationAction:
    try:
        return _action_adapter.validate_python(payload)
    except ValidationError as e:
        raise ValidationFailed(message=f"Invalid mutation action: {e.errors()[0].get('msg', 'invalid')}") from e


@router.post("", response_model=ResponseEnvelope)
async def execute_mutation(
    payload: dict = Body(...),
    actor: Actor = Depends(get_current_actor),
    orchestrator: MutationOrchestrator = Depends(get_orchestrator),
):
    """Run one mutation action through authorize, persist, cascade, notify and invalidate."""
    action = parse_action(payload)
    result = await orchestrator.execute(action, actor)
    if not result.ok:
        exc_class = FAILURE_EXCEPTIONS.get(result.reason)
        if exc_class is None:
            raise BusinessException(message=result.message)
        raise exc_class(message=result.message)
    return ResponseEnvelope(
        success=True,
        code="MUT_000",
        message=f"{result.kind} applied",
        data=result.model_dump(mode="json"),
    )


@router.post("/reconcile", response_model=ResponseEnvelope)
async def reconcile_pending(
    actor: Actor = Depends(get_current_actor),
    orchestrator: MutationOrchestrator = Depends(get_orchestrator),
):
    """Retry queued project completions and superadmin demotions."""
    report = await orchestrator.reconcile()
    logger.info(f"Reconcile requested by {actor.id}: pending projects={report.pending_projects}")
    return ResponseEnvelope(success=True, code="MUT_001", message="Reconciled", data=report.model_dump(mode="json"))
