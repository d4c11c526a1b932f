from __future__ import annotations
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)

Callback = Callable[[], Union[Awaitable[Any], Any]]


class TaskScheduler:
    """Keyed single-shot delayed callbacks owned by one view.

    Scheduling a key that is already pending cancels the earlier callback
    (debounce). ``close()`` cancels everything so nothing fires after teardown.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}
        self._closed = False

    def call_later(self, key: str, delay: float, callback: Callback) -> asyncio.Task:
        if self._closed:
            raise RuntimeError("scheduler is closed")
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(self._run(key, delay, callback), name=f"scheduled:{key}")
        self._tasks[key] = task
        return task

    async def _run(self, key: str, delay: float, callback: Callback) -> None:
        try:
            await asyncio.sleep(delay)
            # Drop our own entry first so the callback may re-schedule the same key
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]
            result = callback()
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("scheduled callback %s failed", key)

    def pending(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def task(self, key: str) -> Optional[asyncio.Task]:
        return self._tasks.get(key)

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def close(self) -> None:
        self._closed = True
        tasks = list(self._tasks.values())
        self._tasks.clear()
        current = asyncio.current_task()
        tasks = [t for t in tasks if t is not current]
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
