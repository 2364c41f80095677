import asyncio

import pytest

from conftest import FailingCache

from tasksync.core.exceptions import CacheInvalidationFailure
from tasksync.models.enums import MutationKind
from tasksync.services.cache import (
    DEFAULT_INVALIDATION_MAP,
    STALE,
    CacheInvalidator,
    InvalidationTarget,
    ViewCache,
    ViewTemplate,
)


def _run(coro):
    return asyncio.run(coro)


class TestViewCache:
    def test_absent_keys_are_stale(self) -> None:
        cache = ViewCache()
        assert cache.get(("tasks", "org-1")) is STALE
        assert not STALE

    def test_put_then_invalidate(self) -> None:
        cache = ViewCache()
        cache.put(("tasks", "org-1"), [1, 2])
        assert cache.get(("tasks", "org-1")) == [1, 2]
        _run(cache.invalidate_many([("tasks", "org-1")]))
        assert cache.is_stale(("tasks", "org-1"))

    def test_invalidation_is_idempotent(self) -> None:
        cache = ViewCache()
        cache.put(("projects", "org-1"), [])
        _run(cache.invalidate_many([("projects", "org-1"), ("projects", "org-1"), ("unknown",)]))
        _run(cache.invalidate_many([("projects", "org-1")]))
        assert cache.is_stale(("projects", "org-1"))
        assert cache.batches == 2


class TestTemplates:
    def test_key_order_is_name_then_params(self) -> None:
        key = ViewTemplate.PERSONAL_TASKS.key(user_id="u-1", organization_id="org-1")
        assert key == ("personal-tasks", "org-1", "u-1")

    def test_lookup_by_name(self) -> None:
        assert ViewTemplate.by_name("project-tasks") is ViewTemplate.PROJECT_TASKS
        with pytest.raises(KeyError):
            ViewTemplate.by_name("nope")

    def test_default_map_is_frozen(self) -> None:
        with pytest.raises(TypeError):
            DEFAULT_INVALIDATION_MAP[MutationKind.TASK_CREATED] = frozenset()


class TestInvalidator:
    def test_reassignment_hits_both_personal_views(self) -> None:
        cache = ViewCache()
        invalidator = CacheInvalidator(cache)
        target = InvalidationTarget(organization_id="org-1", project_ids={"p-1"}, user_ids={"u-a", "u-b"})
        keys = _run(invalidator.invalidate(MutationKind.TASK_ASSIGNED, target))
        assert set(keys) == {
            ("tasks", "org-1"),
            ("personal-tasks", "org-1", "u-a"),
            ("personal-tasks", "org-1", "u-b"),
            ("project-tasks", "org-1", "p-1"),
        }
        assert cache.batches == 1

    def test_task_without_project_skips_project_views(self) -> None:
        invalidator = CacheInvalidator(ViewCache())
        keys = invalidator.resolve(MutationKind.TASK_CREATED, InvalidationTarget(organization_id="org-1", user_ids={"u"}))
        assert keys == {("tasks", "org-1"), ("personal-tasks", "org-1", "u")}

    def test_batch_deduplicates_into_one_call(self) -> None:
        cache = ViewCache()
        invalidator = CacheInvalidator(cache)
        target = InvalidationTarget(organization_id="org-1", project_ids={"p-1"}, user_ids={"u"})
        keys = _run(invalidator.invalidate_batch([
            (MutationKind.TASK_STATUS_CHANGED, target),
            (MutationKind.TASK_UPDATED, target),
            (MutationKind.PROJECT_AUTO_COMPLETED, InvalidationTarget(organization_id="org-1", project_ids={"p-1"})),
        ]))
        assert len(keys) == len(set(keys)) == 5
        assert cache.batches == 1

    def test_project_deletion_covers_task_views(self) -> None:
        invalidator = CacheInvalidator(ViewCache())
        keys = invalidator.resolve(
            MutationKind.PROJECT_DELETED, InvalidationTarget(organization_id="org-1", project_ids={"p-1"}),
        )
        assert ("project-tasks", "org-1", "p-1") in keys
        assert ("tasks", "org-1") in keys

    def test_custom_map_can_be_injected(self) -> None:
        invalidator = CacheInvalidator(ViewCache(), {MutationKind.TASK_CREATED: [ViewTemplate.ORG_TASKS]})
        assert invalidator.resolve(
            MutationKind.TASK_CREATED, InvalidationTarget(organization_id="o", user_ids={"u"}),
        ) == {("tasks", "o")}
        assert invalidator.resolve(MutationKind.PROJECT_CREATED, InvalidationTarget(organization_id="o")) == set()

    def test_backend_errors_are_wrapped(self) -> None:
        invalidator = CacheInvalidator(FailingCache())
        with pytest.raises(CacheInvalidationFailure):
            _run(invalidator.invalidate(MutationKind.USER_ROLE_CHANGED, InvalidationTarget(organization_id="o")))
