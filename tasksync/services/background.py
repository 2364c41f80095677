import asyncio
import logging
from typing import Any, Coroutine, Optional

logger = logging.getLogger(__name__)


class BackgroundDispatcher:
    """
    Runs side-effect coroutines without blocking the caller.

    Tasks are kept referenced until they finish; failures are logged and never
    reach the code that submitted them.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"[Background] {task.get_name()} cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[Background] {task.get_name()} failed: {exc}")

    async def drain(self) -> None:
        """Wait for everything submitted so far, including work submitted meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
