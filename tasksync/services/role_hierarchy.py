"""
Role hierarchy: a total order over roles and the authorization predicates
derived from it.

The table is an immutable value handed to RoleHierarchy, so alternate
hierarchies can be injected without touching module state.
"""
from types import MappingProxyType
from typing import Mapping, Optional, Union

from tasksync.models.enums import UserRole

RoleLike = Union[UserRole, str, None]

DEFAULT_ROLE_LEVELS: Mapping[UserRole, int] = MappingProxyType({
    UserRole.USER: 1,
    UserRole.TEAM_LEADER: 2,
    UserRole.MANAGER: 3,
    UserRole.ADMIN: 4,
    UserRole.SUPERADMIN: 5,
})


def _coerce(role: RoleLike) -> Optional[UserRole]:
    if isinstance(role, UserRole):
        return role
    try:
        return UserRole(role)
    except ValueError:
        return None


class RoleHierarchy:
    def __init__(self, levels: Mapping[UserRole, int] = DEFAULT_ROLE_LEVELS):
        if not levels:
            raise ValueError("Role hierarchy must define at least one role")
        if len(set(levels.values())) != len(levels):
            raise ValueError("Role levels must be distinct to form a total order")
        self._levels: Mapping[UserRole, int] = MappingProxyType(dict(levels))
        self.top_role: UserRole = max(self._levels, key=self._levels.__getitem__)

    def level_of(self, role: RoleLike) -> int:
        """Authority level; unknown or missing roles are level 0 so checks fail closed."""
        known = _coerce(role)
        if known is None:
            return 0
        return self._levels.get(known, 0)

    def has_access(self, user_role: RoleLike, required_role: RoleLike) -> bool:
        return self.level_of(user_role) >= self.level_of(required_role)

    def is_top(self, role: RoleLike) -> bool:
        return _coerce(role) == self.top_role

    def can_manage(self, actor_role: RoleLike, target_role: RoleLike, new_role: RoleLike) -> bool:
        """
        Whether an actor may move a user from target_role to new_role.

        The actor must strictly outrank both roles, and only the top role may
        touch anything involving the top role.
        """
        actor_level = self.level_of(actor_role)
        if actor_level <= self.level_of(target_role) or actor_level <= self.level_of(new_role):
            return False
        touches_top = self.is_top(target_role) or self.is_top(new_role)
        return not touches_top or self.is_top(actor_role)

    def next_lower(self, role: RoleLike) -> Optional[UserRole]:
        """The role directly below `role`, used when demoting the top role holder."""
        level = self.level_of(role)
        below = [r for r, lvl in self._levels.items() if lvl < level]
        if not below:
            return None
        return max(below, key=self._levels.__getitem__)

    def ordered(self) -> list[UserRole]:
        return sorted(self._levels, key=self._levels.__getitem__)


DEFAULT_HIERARCHY = RoleHierarchy()


def level_of(role: RoleLike) -> int:
    return DEFAULT_HIERARCHY.level_of(role)


def has_access(user_role: RoleLike, required_role: RoleLike) -> bool:
    return DEFAULT_HIERARCHY.has_access(user_role, required_role)


def can_manage(actor_role: RoleLike, target_role: RoleLike, new_role: RoleLike) -> bool:
    return DEFAULT_HIERARCHY.can_manage(actor_role, target_role, new_role)
