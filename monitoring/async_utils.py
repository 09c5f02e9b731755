import asyncio
from typing import Iterable, Awaitable, Optional, Callable, List


async def cancel_and_wait(*tasks: Optional[asyncio.Task]) -> None:
    """Cancel the given tasks (None entries ignored) and wait for them to unwind."""
    pending = [t for t in tasks if t is not None]
    for t in pending:
        if not t.done():
            t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        await cancel_and_wait(*task_list)
        if cleanup is not None:
            await cleanup()
