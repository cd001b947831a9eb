"""
Supervised background tasks for fire-and-forget side effects
(alert delivery, queue wake-ups).

Tasks are held in a module-level set until they finish so they are never
garbage collected mid-flight, and every failure is logged.
"""
import asyncio
import logging
from typing import Coroutine

logger = logging.getLogger(__name__)

_tasks: set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task %s failed: %s", task.get_name(), str(exc),
            exc_info=(type(exc), exc, exc.__traceback__),
        )


def spawn(coro: Coroutine, name: str) -> asyncio.Task:
    """Schedule a coroutine under supervision."""
    task = asyncio.create_task(coro, name=name)
    _tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def pending_count() -> int:
    return len(_tasks)


async def drain(timeout: float = 10.0) -> None:
    """Wait for in-flight background tasks (shutdown and tests)."""
    if not _tasks:
        return
    done, pending = await asyncio.wait(list(_tasks), timeout=timeout)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
