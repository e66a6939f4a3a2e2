import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)

_background_tasks: set[asyncio.Task[Any]] = set()


def _task_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if not task.cancelled():
        exc = task.exception()
        if exc:
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)


def create_background_task(
    coro: Coroutine[Any, Any, Any], *, name: str | None = None
) -> asyncio.Task:
    """Create a background task that is kept alive until it finishes."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_task_done)
    return task


def pending_task_count() -> int:
    return len(_background_tasks)


async def drain_background_tasks(timeout: float = 30.0) -> None:
    """Wait for in-flight background work on shutdown, cancelling stragglers."""
    if not _background_tasks:
        return
    tasks = list(_background_tasks)
    logger.info("Waiting for %d background task(s) to finish", len(tasks))
    _, still_running = await asyncio.wait(tasks, timeout=timeout)
    for task in still_running:
        task.cancel()
    if still_running:
        logger.warning("Cancelled %d background task(s) at shutdown", len(still_running))
