from typing import Any, Awaitable, Callable, Dict, Hashable
import asyncio
import structlog

logger = structlog.get_logger(__name__)


class SingleFlight:
    """At most one in-flight call per key; concurrent callers share its result.

    The first caller for a key starts the work as a task. Later callers for
    the same key await that task instead of starting their own. The key is
    released when the task finishes, whether it succeeded or failed, so the
    next call after a failure starts fresh.
    """

    def __init__(self):
        self._calls: Dict[Hashable, asyncio.Task] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._calls

    def __len__(self) -> int:
        return len(self._calls)

    async def run(self, key: Hashable, func: Callable[[], Awaitable[Any]]) -> Any:
        task = self._calls.get(key)

        if task is None:
            task = asyncio.ensure_future(func())
            self._calls[key] = task
            task.add_done_callback(lambda t: self._forget(key, t))
        else:
            logger.debug("Joining in-flight call", key=key)

        # A cancelled waiter must not cancel the shared call
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task):
        if self._calls.get(key) is task:
            del self._calls[key]

        # Mark the exception as retrieved when no waiter is left to see it
        if not task.cancelled():
            task.exception()
