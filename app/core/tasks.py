import asyncio
from typing import Any, Coroutine, Optional, Set

# Strong references to fire-and-forget tasks; the event loop only keeps weak ones
_background_tasks: Set[asyncio.Task] = set()


def spawn(coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
    """Schedule ``coro`` as a background task that outlives its caller."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def pending_background_tasks() -> int:
    return len(_background_tasks)
