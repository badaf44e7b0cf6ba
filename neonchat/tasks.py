import asyncio
import logging
from typing import Awaitable, Set


logger = logging.getLogger("uvicorn.error")


class DetachedTasks:
    """Fire-and-forget side effects (audit logs, persistence) kept off the stream path.

    Submitted coroutines are never awaited by the caller. Failures are logged and
    dropped; there is no retry. ``drain`` lets shutdown (and tests) wait for the
    tasks still in flight.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, coro: Awaitable[None], name: str = "detached") -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("Detached task %s failed: %s", name, exc, exc_info=exc)

        task.add_done_callback(_done)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float = 5.0) -> None:
        if not self._tasks:
            return
        done, still_pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in still_pending:
            task.cancel()
