"""
Client-side view cache and the invalidation protocol that keeps it
consistent with the remote store.

View keys are tuples, name first, followed by the defining parameters in a
fixed order (organization, then user or project).
"""
import logging
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel, Field

from tasksync.core.exceptions import CacheInvalidationFailure
from tasksync.models.enums import MutationKind

logger = logging.getLogger(__name__)

ViewKey = tuple[str, ...]


class _Stale:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "STALE"

    def __bool__(self):
        return False


STALE = _Stale()


class ViewTemplate(Enum):
    ORG_TASKS = ("tasks", ("organization_id",))
    PERSONAL_TASKS = ("personal-tasks", ("organization_id", "user_id"))
    PROJECT_TASKS = ("project-tasks", ("organization_id", "project_id"))
    ORG_PROJECTS = ("projects", ("organization_id",))
    PROJECT_DETAIL = ("project", ("organization_id", "project_id"))
    ORG_USERS = ("organization-users", ("organization_id",))

    def __init__(self, view_name: str, params: tuple[str, ...]):
        self.view_name = view_name
        self.params = params

    def key(self, **values: str) -> ViewKey:
        return (self.view_name, *(values[p] for p in self.params))

    @classmethod
    def by_name(cls, view_name: str) -> "ViewTemplate":
        for template in cls:
            if template.view_name == view_name:
                return template
        raise KeyError(view_name)


_TASK_VIEWS = frozenset({ViewTemplate.ORG_TASKS, ViewTemplate.PERSONAL_TASKS, ViewTemplate.PROJECT_TASKS})
_PROJECT_VIEWS = frozenset({ViewTemplate.ORG_PROJECTS, ViewTemplate.PROJECT_DETAIL})

DEFAULT_INVALIDATION_MAP: Mapping[MutationKind, frozenset] = MappingProxyType({
    MutationKind.TASK_CREATED: _TASK_VIEWS,
    MutationKind.TASK_UPDATED: _TASK_VIEWS,
    MutationKind.TASK_STATUS_CHANGED: _TASK_VIEWS,
    MutationKind.TASK_DELETED: _TASK_VIEWS,
    MutationKind.TASK_ASSIGNED: _TASK_VIEWS,
    MutationKind.PROJECT_CREATED: _PROJECT_VIEWS,
    MutationKind.PROJECT_UPDATED: _PROJECT_VIEWS,
    MutationKind.PROJECT_DELETED: _PROJECT_VIEWS | {ViewTemplate.PROJECT_TASKS, ViewTemplate.ORG_TASKS},
    MutationKind.PROJECT_AUTO_COMPLETED: _PROJECT_VIEWS,
    MutationKind.USER_ROLE_CHANGED: frozenset({ViewTemplate.ORG_USERS}),
})


class InvalidationTarget(BaseModel):
    """
    Parameters of a mutated entity.

    `project_ids` and `user_ids` hold old and new values together, so a task
    moving between projects or assignees invalidates both sides.
    """
    organization_id: str
    project_ids: set[str] = Field(default_factory=set)
    user_ids: set[str] = Field(default_factory=set)


class CacheEntry(BaseModel):
    value: Any = None
    stale: bool = False


class ViewCache:
    """Read side used by UI components; never fetches anything itself."""

    def __init__(self):
        self._entries: dict[ViewKey, CacheEntry] = {}
        # bumped on every invalidation, including keys not cached yet
        self._generations: dict[ViewKey, int] = {}
        self.batches: int = 0

    def get(self, key: ViewKey) -> Any:
        entry = self._entries.get(tuple(key))
        if entry is None or entry.stale:
            return STALE
        return entry.value

    def generation(self, key: ViewKey) -> int:
        return self._generations.get(tuple(key), 0)

    def put(self, key: ViewKey, value: Any, generation: Optional[int] = None) -> bool:
        """Store a loaded value.

        When `generation` is given, the value is dropped if the key was invalidated
        after the loader read it, so rows fetched before a mutation never land as fresh.
        """
        key = tuple(key)
        if generation is not None and generation != self.generation(key):
            logger.debug(f"Dropped outdated load for {key}")
            return False
        self._entries[key] = CacheEntry(value=value)
        return True

    def is_stale(self, key: ViewKey) -> bool:
        return self.get(key) is STALE

    async def invalidate_many(self, keys: Iterable[ViewKey]) -> None:
        # idempotent: an already-stale key stays stale
        self.batches += 1
        for key in set(map(tuple, keys)):
            self._generations[key] = self._generations.get(key, 0) + 1
            entry = self._entries.get(key)
            if entry is not None:
                entry.stale = True


class CacheInvalidator:
    def __init__(
        self,
        cache: ViewCache,
        invalidation_map: Optional[Mapping[MutationKind, Iterable[ViewTemplate]]] = None,
    ):
        self.cache = cache
        source = invalidation_map if invalidation_map is not None else DEFAULT_INVALIDATION_MAP
        self.invalidation_map: Mapping[MutationKind, frozenset] = MappingProxyType(
            {kind: frozenset(templates) for kind, templates in source.items()}
        )

    def resolve(self, kind: MutationKind, target: InvalidationTarget) -> set[ViewKey]:
        keys: set[ViewKey] = set()
        for template in self.invalidation_map.get(kind, ()):
            if "user_id" in template.params:
                for user_id in target.user_ids:
                    keys.add(template.key(organization_id=target.organization_id, user_id=user_id))
            elif "project_id" in template.params:
                for project_id in target.project_ids:
                    keys.add(template.key(organization_id=target.organization_id, project_id=project_id))
            else:
                keys.add(template.key(organization_id=target.organization_id))
        return keys

    async def invalidate(self, kind: MutationKind, target: InvalidationTarget) -> list[ViewKey]:
        return await self.invalidate_batch([(kind, target)])

    async def invalidate_batch(
        self, entries: Iterable[tuple[MutationKind, InvalidationTarget]]
    ) -> list[ViewKey]:
        """Resolve every (kind, target) pair and issue a single invalidation call."""
        keys: set[ViewKey] = set()
        for kind, target in entries:
            keys |= self.resolve(kind, target)
        ordered = sorted(keys)
        if not ordered:
            return ordered
        try:
            await self.cache.invalidate_many(ordered)
        except Exception as e:
            raise CacheInvalidationFailure(message=f"Failed to invalidate {len(ordered)} view keys: {e}") from e
        logger.debug(f"Invalidated {len(ordered)} view keys: {ordered}")
        return ordered
