"""Loads view values from the store into the ViewCache."""
import logging
from typing import Any, Optional

from tasksync.core.exceptions import NotFound, ValidationFailed
from tasksync.repositories.base import Persistence
from tasksync.services.cache import ViewCache, ViewKey, ViewTemplate

logger = logging.getLogger(__name__)


class ViewLoader:
    def __init__(self, store: Persistence, cache: ViewCache):
        self.store = store
        self.cache = cache

    async def load(
        self,
        template: ViewTemplate,
        organization_id: str,
        user_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> tuple[ViewKey, Any, bool]:
        """Fetch a view and cache it.

        Returns the key, the fetched value and whether it was cached. A value read
        while a mutation invalidated the same key is returned but not cached.
        """
        values = {"organization_id": organization_id, "user_id": user_id, "project_id": project_id}
        missing = [p for p in template.params if not values[p]]
        if missing:
            raise ValidationFailed(message=f"View {template.view_name} requires {', '.join(missing)}")
        key = template.key(**{p: values[p] for p in template.params})

        generation = self.cache.generation(key)
        value = await self._fetch(template, organization_id, user_id, project_id)
        cached = self.cache.put(key, value, generation=generation)
        if cached:
            logger.debug(f"[Views] loaded {key}")
        else:
            logger.info(f"[Views] {key} was invalidated while loading; left stale")
        return key, value, cached

    async def _fetch(
        self, template: ViewTemplate, organization_id: str, user_id: Optional[str], project_id: Optional[str]
    ) -> Any:
        if template is ViewTemplate.ORG_TASKS:
            tasks = await self.store.list_tasks(organization_id)
            return [t.model_dump(mode="json") for t in tasks]
        if template is ViewTemplate.PERSONAL_TASKS:
            tasks = await self.store.list_tasks(organization_id)
            return [t.model_dump(mode="json") for t in tasks if user_id in t.personal_view_user_ids]
        if template is ViewTemplate.PROJECT_TASKS:
            tasks = await self.store.list_tasks(organization_id, project_id=project_id)
            return [t.model_dump(mode="json") for t in tasks]
        if template is ViewTemplate.ORG_PROJECTS:
            projects = await self.store.list_projects(organization_id)
            return [p.model_dump(mode="json") for p in projects]
        if template is ViewTemplate.PROJECT_DETAIL:
            project = await self.store.get_project(project_id)
            if project is None or project.organization_id != organization_id:
                raise NotFound(message=f"Project {project_id} not found")
            return project.model_dump(mode="json")
        if template is ViewTemplate.ORG_USERS:
            users = await self.store.list_users(organization_id)
            return [u.model_dump(mode="json") for u in users]
        raise ValueError(f"Unknown view template: {template}")
