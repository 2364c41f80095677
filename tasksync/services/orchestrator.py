"""
Mutation orchestrator.

Every UI action goes through `MutationOrchestrator.execute`, which walks one
lifecycle:

    Idle -> Authorizing -> Persisting -> ApplyingCascade -> Notifying
         -> Invalidating -> Done

with Failed reachable only from Authorizing or Persisting. Local state is
touched only after the remote write is confirmed, so a failed mutation leaves
it exactly as it was. Side effects after the primary write (cascade writes,
notifications, cache bookkeeping) are fail-soft: they are logged and reported
as warnings, never unwound into a failure.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_fixed

from tasksync.core.exceptions import (
    BusinessException,
    CacheInvalidationFailure,
    CascadeInconsistency,
    NotFound,
    NotificationDispatchFailure,
    RemoteWriteFailure,
    Unauthorized,
    ValidationFailed,
)
from tasksync.models.enums import MutationKind, ProjectStatus, TaskStatus, UserRole
from tasksync.repositories.base import Persistence
from tasksync.schemas.actions import (
    AssignTask,
    ChangeTaskStatus,
    ChangeUserRole,
    CreateProject,
    CreateTask,
    DeleteProject,
    DeleteTask,
    MutationAction,
    UpdateProject,
    UpdateTask,
)
from tasksync.schemas.events import Event, ProjectAutoCompleted, SuperadminTransferred, UserRoleChanged
from tasksync.schemas.records import Actor, ProjectRecord, RoleChangeRequest, TaskRecord, UserRecord
from tasksync.schemas.results import MutationPhase, MutationResult, ReconcileReport
from tasksync.services.background import BackgroundDispatcher
from tasksync.services.cache import CacheInvalidator, InvalidationTarget, ViewKey
from tasksync.services.notifier import AssignmentNotifier, unique_recipients
from tasksync.services.role_hierarchy import DEFAULT_HIERARCHY, RoleHierarchy
from tasksync.services.state import SessionState
from tasksync.services.task_state import TaskStateMachine
from tasksync.utils.timezone import utc_now

logger = logging.getLogger(__name__)

# fail-loud errors end the lifecycle in Failed
FAIL_LOUD = (Unauthorized, ValidationFailed, NotFound, RemoteWriteFailure)

_TRANSITIONS = {
    MutationPhase.IDLE: {MutationPhase.AUTHORIZING},
    MutationPhase.AUTHORIZING: {MutationPhase.PERSISTING, MutationPhase.FAILED},
    MutationPhase.PERSISTING: {MutationPhase.APPLYING_CASCADE, MutationPhase.FAILED},
    MutationPhase.APPLYING_CASCADE: {MutationPhase.NOTIFYING},
    MutationPhase.NOTIFYING: {MutationPhase.INVALIDATING},
    MutationPhase.INVALIDATING: {MutationPhase.DONE},
    MutationPhase.DONE: set(),
    MutationPhase.FAILED: set(),
}

# demoted superadmin holders in the queue are retried by reconcile()
DEMOTE_PENDING_WARNING = "superadmin-demote-pending"


class SideEffects:
    """What a mutation produced besides its primary write."""

    def __init__(self):
        self.events: list[Event] = []
        self.warnings: list[str] = []
        self.invalidations: list[tuple[MutationKind, InvalidationTarget]] = []
        self.assignments: list[tuple[TaskRecord, list[str]]] = []

    def invalidate(self, kind: MutationKind, target: InvalidationTarget) -> None:
        self.invalidations.append((kind, target))

    def warn(self, reason: str) -> None:
        if reason not in self.warnings:
            self.warnings.append(reason)


class MutationLifecycle:
    """Bookkeeping for a single execute() call; never shared between calls."""

    def __init__(self, kind: str, actor: Actor):
        self.kind = kind
        self.actor = actor
        self.phase = MutationPhase.IDLE
        self.phases: list[MutationPhase] = [MutationPhase.IDLE]
        self.effects = SideEffects()
        self.entity: Optional[Any] = None
        self.invalidated: list[ViewKey] = []

    def advance(self, phase: MutationPhase) -> None:
        if phase not in _TRANSITIONS[self.phase]:
            raise RuntimeError(f"Illegal mutation phase transition {self.phase.value} -> {phase.value}")
        self.phase = phase
        self.phases.append(phase)

    def fail(self, error: BusinessException) -> MutationResult:
        failed_in = self.phase
        self.advance(MutationPhase.FAILED)
        logger.info(f"[Mutation] {self.kind} by {self.actor.id} failed in {failed_in.value}: "
                    f"{error.reason} ({error.message})")
        return MutationResult(
            ok=False,
            kind=self.kind,
            phase=self.phase,
            phases=list(self.phases),
            reason=error.reason,
            message=error.message,
        )

    def result(self) -> MutationResult:
        return MutationResult(
            ok=True,
            kind=self.kind,
            phase=self.phase,
            phases=list(self.phases),
            entity=self.entity,
            events=list(self.effects.events),
            invalidated=list(self.invalidated),
            warnings=list(self.effects.warnings),
        )


def _assignment_fields(assignee_ids: list[str]) -> dict[str, Any]:
    # one assignee uses the single field, several use the list field
    if not assignee_ids:
        return {"assigned_to_id": None, "assigned_to_ids": []}
    if len(assignee_ids) == 1:
        return {"assigned_to_id": assignee_ids[0], "assigned_to_ids": []}
    return {"assigned_to_id": None, "assigned_to_ids": list(assignee_ids)}


def _require_text(value: Optional[str], field: str) -> str:
    if value is None or not value.strip():
        raise ValidationFailed(message=f"{field} is required")
    return value.strip()


def _ids(*values: Optional[str]) -> set[str]:
    return {v for v in values if v}


class MutationOrchestrator:
    def __init__(
        self,
        store: Persistence,
        state: SessionState,
        notifier: AssignmentNotifier,
        invalidator: CacheInvalidator,
        dispatcher: BackgroundDispatcher,
        hierarchy: RoleHierarchy = DEFAULT_HIERARCHY,
        state_machine: Optional[TaskStateMachine] = None,
        clock: Callable[[], datetime] = utc_now,
        demote_attempts: int = 3,
        demote_wait_seconds: float = 0.5,
    ):
        self.store = store
        self.state = state
        self.notifier = notifier
        self.invalidator = invalidator
        self.dispatcher = dispatcher
        self.hierarchy = hierarchy
        self.state_machine = state_machine or TaskStateMachine()
        self.clock = clock
        self.demote_attempts = max(1, demote_attempts)
        self.demote_wait_seconds = demote_wait_seconds

        # project_id -> organization_id
        self.pending_cascades: dict[str, str] = {}
        # user_id -> (role to demote to, organization_id)
        self.pending_demotions: dict[str, tuple[UserRole, str]] = {}

        self._handlers: dict[str, Callable[[Any, MutationLifecycle], Awaitable[None]]] = {
            "CreateTask": self._create_task,
            "UpdateTask": self._update_task,
            "ChangeTaskStatus": self._change_task_status,
            "DeleteTask": self._delete_task,
            "AssignTask": self._assign_task,
            "CreateProject": self._create_project,
            "UpdateProject": self._update_project,
            "DeleteProject": self._delete_project,
            "ChangeUserRole": self._change_user_role,
        }

    async def execute(self, action: MutationAction, actor: Actor) -> MutationResult:
        handler = self._handlers.get(action.kind)
        if handler is None:
            raise TypeError(f"Unsupported mutation action: {action.kind}")

        lifecycle = MutationLifecycle(action.kind, actor)
        lifecycle.advance(MutationPhase.AUTHORIZING)
        try:
            # handlers leave the lifecycle in ApplyingCascade
            await handler(action, lifecycle)
        except FAIL_LOUD as e:
            return lifecycle.fail(e)

        lifecycle.advance(MutationPhase.NOTIFYING)
        self._dispatch_notifications(lifecycle)

        lifecycle.advance(MutationPhase.INVALIDATING)
        lifecycle.invalidated = await self._invalidate(lifecycle.effects)

        lifecycle.advance(MutationPhase.DONE)
        logger.info(f"[Mutation] {action.kind} by {actor.id} done "
                    f"({len(lifecycle.invalidated)} views invalidated, warnings={lifecycle.effects.warnings})")
        return lifecycle.result()

    async def refresh(self, organization_id: str, user_id: Optional[str] = None) -> None:
        """Load the organization's rows, and the user's notifications if given, into session state."""
        tasks = await self.store.list_tasks(organization_id)
        projects = await self.store.list_projects(organization_id)
        users = await self.store.list_users(organization_id)
        notifications = await self.store.list_notifications(user_id) if user_id else []
        self.state.hydrate(tasks=tasks, projects=projects, users=users, notifications=notifications)

    # --- lookups ---
    async def _load_task(self, task_id: str, actor: Actor) -> TaskRecord:
        task = await self.store.get_task(task_id)
        if task is None or task.organization_id != actor.organization_id:
            raise NotFound(message=f"Task {task_id} not found")
        return task

    async def _load_project(self, project_id: str, actor: Actor) -> ProjectRecord:
        project = await self.store.get_project(project_id)
        if project is None or project.organization_id != actor.organization_id:
            raise NotFound(message=f"Project {project_id} not found")
        return project

    async def _load_user(self, user_id: str, actor: Actor) -> UserRecord:
        user = await self.store.get_user(user_id)
        if user is None or user.organization_id != actor.organization_id:
            raise NotFound(message=f"User {user_id} not found")
        return user

    # --- authorization rules ---
    def _is_manager(self, actor: Actor) -> bool:
        return self.hierarchy.has_access(actor.role, UserRole.MANAGER)

    def _can_write_project(self, actor: Actor, project: ProjectRecord) -> bool:
        return (
            project.manager_id == actor.id
            or actor.id in project.team_member_ids
            or self._is_manager(actor)
        )

    def _can_edit_task(self, actor: Actor, task: TaskRecord) -> bool:
        return actor.id in task.assignee_ids or actor.id == task.user_id or self._is_manager(actor)

    def _can_administer_project(self, actor: Actor, project: ProjectRecord) -> bool:
        return project.manager_id == actor.id or self.hierarchy.has_access(actor.role, UserRole.ADMIN)

    def _task_target(self, *tasks: TaskRecord) -> InvalidationTarget:
        target = InvalidationTarget(organization_id=tasks[0].organization_id)
        for task in tasks:
            target.project_ids |= _ids(task.project_id)
            target.user_ids |= task.personal_view_user_ids
        return target

    # --- task handlers ---
    async def _create_task(self, action: CreateTask, lc: MutationLifecycle) -> None:
        actor = lc.actor
        title = _require_text(action.title, "title")
        if action.project_id:
            project = await self._load_project(action.project_id, actor)
            if not self._can_write_project(actor, project):
                raise Unauthorized(message="No write access to this project")
        assignees = unique_recipients(action.assignee_ids)
        now = self.clock()
        record = TaskRecord(
            id=str(uuid.uuid4()),
            organization_id=actor.organization_id,
            user_id=actor.id,
            title=title,
            description=action.description,
            status=action.status,
            priority=action.priority,
            deadline=action.deadline,
            project_id=action.project_id or None,
            completed_at=now if action.status == TaskStatus.COMPLETED else None,
            created_at=now,
            updated_at=now,
            **_assignment_fields(assignees),
        )

        lc.advance(MutationPhase.PERSISTING)
        task = await self.store.insert_task(record)

        lc.advance(MutationPhase.APPLYING_CASCADE)
        self.state.upsert_task(task)
        lc.entity = task
        lc.effects.invalidate(MutationKind.TASK_CREATED, self._task_target(task))
        if task.project_id and task.status == TaskStatus.COMPLETED:
            await self._cascade(task.project_id, task.organization_id, lc.effects)
        if assignees:
            lc.effects.assignments.append((task, assignees))

    async def _update_task(self, action: UpdateTask, lc: MutationLifecycle) -> None:
        actor = lc.actor
        task = await self._load_task(action.task_id, actor)
        if not self._can_edit_task(actor, task):
            raise Unauthorized(message="Only assignees, the creator or a manager can edit this task")

        changes = action.changes()
        if not changes:
            raise ValidationFailed(message="No fields to update")
        for field in ("title", "status", "priority"):
            if field in changes and changes[field] is None:
                raise ValidationFailed(message=f"{field} cannot be empty")
        if "title" in changes:
            changes["title"] = _require_text(changes["title"], "title")
        if changes.get("description") is None and "description" in changes:
            changes["description"] = ""
        if changes.get("project_id") and changes["project_id"] != task.project_id:
            project = await self._load_project(changes["project_id"], actor)
            if not self._can_write_project(actor, project):
                raise Unauthorized(message="No write access to the target project")

        now = self.clock()
        events: list[Event] = []
        status_touched = "status" in changes
        if status_touched:
            applied, events = self.state_machine.apply(task, changes["status"], now)
            changes["completed_at"] = applied.completed_at
        changes["updated_at"] = now

        lc.advance(MutationPhase.PERSISTING)
        updated = await self.store.update_task(task.id, changes)

        lc.advance(MutationPhase.APPLYING_CASCADE)
        self.state.upsert_task(updated)
        lc.entity = updated
        lc.effects.events.extend(events)
        target = self._task_target(task, updated)
        lc.effects.invalidate(MutationKind.TASK_UPDATED, target)
        if status_touched:
            lc.effects.invalidate(MutationKind.TASK_STATUS_CHANGED, target)
        project_moved = updated.project_id != task.project_id
        if updated.project_id and (status_touched or project_moved):
            await self._cascade(updated.project_id, updated.organization_id, lc.effects)
        # the project it left may now consist of completed tasks only
        if project_moved and task.project_id:
            await self._cascade(task.project_id, task.organization_id, lc.effects)

    async def _change_task_status(self, action: ChangeTaskStatus, lc: MutationLifecycle) -> None:
        actor = lc.actor
        task = await self._load_task(action.task_id, actor)
        if not self._can_edit_task(actor, task):
            raise Unauthorized(message="Only assignees, the creator or a manager can change this task's status")

        applied, events = self.state_machine.apply(task, action.status, self.clock())

        lc.advance(MutationPhase.PERSISTING)
        updated = await self.store.update_task(task.id, {
            "status": applied.status,
            "completed_at": applied.completed_at,
            "updated_at": applied.updated_at,
        })

        lc.advance(MutationPhase.APPLYING_CASCADE)
        self.state.upsert_task(updated)
        lc.entity = updated
        lc.effects.events.extend(events)
        lc.effects.invalidate(MutationKind.TASK_STATUS_CHANGED, self._task_target(updated))
        if updated.project_id:
            await self._cascade(updated.project_id, updated.organization_id, lc.effects)

    async def _delete_task(self, action: DeleteTask, lc: MutationLifecycle) -> None:
        actor = lc.actor
        task = await self._load_task(action.task_id, actor)
        if task.user_id != actor.id and not self._is_manager(actor):
            raise Unauthorized(message="Only the creator or a manager can delete this task")

        lc.advance(MutationPhase.PERSISTING)
        await self.store.delete_task(task.id)

        lc.advance(MutationPhase.APPLYING_CASCADE)
        self.state.remove_task(task.id)
        lc.entity = task
        lc.effects.invalidate(MutationKind.TASK_DELETED, self._task_target(task))

    async def _assign_task(self, action: AssignTask, lc: MutationLifecycle) -> None:
        actor = lc.actor
        task = await self._load_task(action.task_id, actor)
        if not self._can_edit_task(actor, task):
            raise Unauthorized(message="Only assignees, the creator or a manager can assign this task")

        assignees = unique_recipients(action.assignee_ids)
        fields = _assignment_fields(assignees)
        fields["updated_at"] = self.clock()

        lc.advance(MutationPhase.PERSISTING)
        updated = await self.store.update_task(task.id, fields)

        lc.advance(MutationPhase.APPLYING_CASCADE)
        self.state.upsert_task(updated)
        lc.entity = updated
        # old and new assignees both lose or gain the task in their personal view
        lc.effects.invalidate(MutationKind.TASK_ASSIGNED, self._task_target(task, updated))
        added = [user_id for user_id in assignees if user_id not in task.assignee_ids]
        if added:
            lc.effects.assignments.append((updated, added))

    # --- project handlers ---
    async def _create_project(self, action: CreateProject, lc: MutationLifecycle) -> None:
        actor = lc.actor
        if not self._is_manager(actor):
            raise Unauthorized(message="Creating projects requires the manager role")
        title = _require_text(action.title, "title")
        now = self.clock()
        record = ProjectRecord(
            id=str(uuid.uuid4()),
            organization_id=actor.organization_id,
            title=title,
            description=action.description,
            manager_id=action.manager_id or actor.id,
            team_member_ids=unique_recipients(action.team_member_ids),
            created_at=now,
            updated_at=now,
        )

        lc.advance(MutationPhase.PERSISTING)
        project = await self.store.insert_project(record)

        lc.advance(MutationPhase.APPLYING_CASCADE)
        self.state.upsert_project(project)
        lc.entity = project
        lc.effects.invalidate(MutationKind.PROJECT_CREATED, InvalidationTarget(
            organization_id=project.organization_id, project_ids={project.id},
        ))

    async def _update_project(self, action: UpdateProject, lc: MutationLifecycle) -> None:
        actor = lc.actor
        project = await self._load_project(action.project_id, actor)
        if not self._can_administer_project(actor, project):
            raise Unauthorized(message="Only the project manager or an admin can edit this project")

        changes = action.changes()
        if not changes:
            raise ValidationFailed(message="No fields to update")
        for field in ("title", "status", "manager_id"):
            if field in changes and changes[field] is None:
                raise ValidationFailed(message=f"{field} cannot be empty")
        if "title" in changes:
            changes["title"] = _require_text(changes["title"], "title")
        if "description" in changes and changes["description"] is None:
            changes["description"] = ""
        if "team_member_ids" in changes:
            changes["team_member_ids"] = unique_recipients(changes["team_member_ids"] or [])
        if "status" in changes:
            changes["is_completed"] = changes["status"] == ProjectStatus.COMPLETED
        changes["updated_at"] = self.clock()

        lc.advance(MutationPhase.PERSISTING)
        updated = await self.store.update_project(project.id, changes)

        lc.advance(MutationPhase.APPLYING_CASCADE)
        self.state.upsert_project(updated)
        lc.entity = updated
        lc.effects.invalidate(MutationKind.PROJECT_UPDATED, InvalidationTarget(
            organization_id=updated.organization_id, project_ids={updated.id},
        ))
        # a manual completion settles anything still queued for this project
        if updated.status == ProjectStatus.COMPLETED:
            self.pending_cascades.pop(updated.id, None)

    async def _delete_project(self, action: DeleteProject, lc: MutationLifecycle) -> None:
        actor = lc.actor
        project = await self._load_project(action.project_id, actor)
        if not self._can_administer_project(actor, project):
            raise Unauthorized(message="Only the project manager or an admin can delete this project")

        lc.advance(MutationPhase.PERSISTING)
        detached = await self.store.delete_project(project.id)

        lc.advance(MutationPhase.APPLYING_CASCADE)
        self.state.remove_project(project.id)
        self.state.detach_project(project.id)
        self.pending_cascades.pop(project.id, None)
        lc.entity = project
        logger.info(f"[Mutation] project {project.id} deleted, {len(detached)} tasks detached")
        lc.effects.invalidate(MutationKind.PROJECT_DELETED, InvalidationTarget(
            organization_id=project.organization_id, project_ids={project.id},
        ))

    # --- role handler ---
    async def _change_user_role(self, action: ChangeUserRole, lc: MutationLifecycle) -> None:
        actor = lc.actor
        top = self.hierarchy.top_role
        new_role = action.new_role
        if action.target_user_id == actor.id:
            raise Unauthorized(message="You cannot change your own role")

        # reject before any lookup when the actor could not grant new_role to anyone
        if new_role == top:
            if not self.hierarchy.is_top(actor.role):
                raise Unauthorized(message=f"Only a {top.value} can transfer the {top.value} role")
        elif not self.hierarchy.can_manage(actor.role, self.hierarchy.ordered()[0], new_role):
            raise Unauthorized(message=f"You cannot assign the {new_role.value} role")

        target = await self._load_user(action.target_user_id, actor)
        if target.role == new_role:
            raise ValidationFailed(message=f"User already has the {new_role.value} role")
        if new_role != top and not self.hierarchy.can_manage(actor.role, target.role, new_role):
            raise Unauthorized(message=f"You cannot change the role of a {target.role.value}")

        request = RoleChangeRequest(
            target_user_id=target.id, current_role=target.role, requested_role=new_role,
        )
        holders: list[UserRecord] = []
        if new_role == top:
            holders = await self.store.list_users(
                actor.organization_id, role=top, exclude_user_id=target.id,
            )
            if holders:
                request = request.model_copy(update={
                    "requires_superadmin_transfer": True,
                    "current_superadmin_id": holders[0].id,
                })

        # promote first: a failed demote leaves an extra holder, never none
        lc.advance(MutationPhase.PERSISTING)
        promoted = await self.store.update_user_role(target.id, new_role)
        demoted: list[tuple[UserRecord, UserRecord]] = []
        pending: list[UserRecord] = []
        demote_role = self.hierarchy.next_lower(top) or UserRole.ADMIN
        for holder in holders:
            try:
                demoted.append((holder, await self._demote(holder.id, demote_role)))
            except (RemoteWriteFailure, NotFound) as e:
                logger.error(f"[RoleChange] demoting {holder.id} after promoting {target.id} failed: {e}; "
                             f"queued for reconciliation")
                self.pending_demotions[holder.id] = (demote_role, actor.organization_id)
                pending.append(holder)

        lc.advance(MutationPhase.APPLYING_CASCADE)
        self.state.upsert_user(promoted)
        lc.entity = promoted
        lc.effects.events.append(UserRoleChanged(
            user_id=promoted.id, old_role=request.current_role, new_role=promoted.role,
        ))
        now = self.clock()
        for holder, after in demoted:
            self.state.upsert_user(after)
            lc.effects.events.append(UserRoleChanged(user_id=after.id, old_role=holder.role, new_role=after.role))
            lc.effects.events.append(SuperadminTransferred(
                from_user_id=holder.id, to_user_id=promoted.id, demoted_at=now,
            ))
        for holder in pending:
            lc.effects.events.append(SuperadminTransferred(from_user_id=holder.id, to_user_id=promoted.id))
            lc.effects.warn(DEMOTE_PENDING_WARNING)
        lc.effects.invalidate(MutationKind.USER_ROLE_CHANGED, InvalidationTarget(
            organization_id=actor.organization_id,
        ))

    async def _demote(self, user_id: str, role: UserRole) -> UserRecord:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.demote_attempts),
            wait=wait_fixed(self.demote_wait_seconds),
            retry=retry_if_exception_type(RemoteWriteFailure),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return await retrying(self.store.update_user_role, user_id, role)

    # --- cascade ---
    async def _cascade(self, project_id: str, organization_id: str, effects: SideEffects) -> bool:
        """Re-run project completion; returns False when the write has to be retried later."""
        try:
            project = await self.store.get_project(project_id)
            if project is None:
                self.pending_cascades.pop(project_id, None)
                return True
            tasks = await self.store.list_tasks(project.organization_id, project_id=project_id)
            completed, event = self.state_machine.recompute_project_completion(project, tasks, self.clock())
            if completed is None:
                self.pending_cascades.pop(project_id, None)
                return True
            confirmed = await self.store.update_project(project_id, {
                "status": completed.status,
                "is_completed": completed.is_completed,
                "updated_at": completed.updated_at,
            })
        except (RemoteWriteFailure, NotFound) as e:
            failure = CascadeInconsistency(project_id, e)
            logger.warning(f"[Cascade] {failure.message}; queued for reconciliation")
            self.pending_cascades[project_id] = organization_id
            effects.warn(failure.reason)
            return False

        self.pending_cascades.pop(project_id, None)
        self.state.upsert_project(confirmed)
        effects.events.append(ProjectAutoCompleted(project=confirmed))
        effects.invalidate(MutationKind.PROJECT_AUTO_COMPLETED, InvalidationTarget(
            organization_id=confirmed.organization_id, project_ids={confirmed.id},
        ))
        logger.info(f"[Cascade] project {project_id} auto-completed")
        return True

    # --- side effects ---
    def _dispatch_notifications(self, lc: MutationLifecycle) -> None:
        for task, assignee_ids in lc.effects.assignments:
            try:
                self.dispatcher.submit(
                    self.notifier.notify_assignment(task, assignee_ids, lc.actor, task.organization_id),
                    name=f"notify-assignment-{task.id}",
                )
            except Exception as e:
                failure = NotificationDispatchFailure(message=f"Could not schedule notifications for {task.id}: {e}")
                logger.error(f"[Notifications] {failure.message}")
                lc.effects.warn(failure.reason)

    async def _invalidate(self, effects: SideEffects) -> list[ViewKey]:
        if not effects.invalidations:
            return []
        try:
            return await self.invalidator.invalidate_batch(effects.invalidations)
        except CacheInvalidationFailure as e:
            logger.error(f"[Cache] {e.message}")
            effects.warn(e.reason)
            return []

    # --- reconciliation ---
    async def reconcile(self) -> ReconcileReport:
        """Retry queued cascade writes and superadmin demotions."""
        effects = SideEffects()
        report = ReconcileReport()

        for project_id, organization_id in list(self.pending_cascades.items()):
            if await self._cascade(project_id, organization_id, effects):
                report.resolved_projects.append(project_id)

        for user_id, (role, organization_id) in list(self.pending_demotions.items()):
            try:
                user = await self.store.update_user_role(user_id, role)
            except RemoteWriteFailure as e:
                logger.warning(f"[RoleChange] demotion of {user_id} still failing: {e}")
                effects.warn(DEMOTE_PENDING_WARNING)
                continue
            except NotFound:
                logger.warning(f"[RoleChange] user {user_id} is gone, dropping pending demotion")
                self.pending_demotions.pop(user_id, None)
                continue
            self.pending_demotions.pop(user_id, None)
            self.state.upsert_user(user)
            effects.events.append(UserRoleChanged(user_id=user.id, old_role=self.hierarchy.top_role, new_role=user.role))
            effects.invalidate(MutationKind.USER_ROLE_CHANGED, InvalidationTarget(organization_id=organization_id))
            report.resolved_demotions.append(user_id)

        report.invalidated = await self._invalidate(effects)
        report.events = effects.events
        report.warnings = effects.warnings
        report.pending_projects = sorted(self.pending_cascades)
        report.pending_demotions = sorted(self.pending_demotions)
        if report.resolved_projects or report.resolved_demotions:
            logger.info(f"[Reconcile] resolved projects={report.resolved_projects} "
                        f"demotions={report.resolved_demotions}")
        return report

