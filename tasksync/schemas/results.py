from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field

from tasksync.schemas.events import Event
from tasksync.schemas.records import ProjectRecord, TaskRecord, UserRecord


class MutationPhase(str, Enum):
    IDLE = "Idle"
    AUTHORIZING = "Authorizing"
    PERSISTING = "Persisting"
    APPLYING_CASCADE = "ApplyingCascade"
    NOTIFYING = "Notifying"
    INVALIDATING = "Invalidating"
    DONE = "Done"
    FAILED = "Failed"


class MutationResult(BaseModel):
    ok: bool
    kind: str
    phase: MutationPhase
    phases: list[MutationPhase] = Field(default_factory=list)
    reason: Optional[str] = None
    message: Optional[str] = None
    entity: Optional[Union[TaskRecord, ProjectRecord, UserRecord]] = None
    events: list[Event] = Field(default_factory=list)
    invalidated: list[tuple[str, ...]] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ReconcileReport(BaseModel):
    """Outcome of retrying queued cascade writes and superadmin demotions."""
    resolved_projects: list[str] = Field(default_factory=list)
    resolved_demotions: list[str] = Field(default_factory=list)
    pending_projects: list[str] = Field(default_factory=list)
    pending_demotions: list[str] = Field(default_factory=list)
    events: list[Event] = Field(default_factory=list)
    invalidated: list[tuple[str, ...]] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
