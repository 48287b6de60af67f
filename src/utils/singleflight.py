from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, TypeVar

T = TypeVar("T")


class SingleFlight:
    """Coalesce concurrent calls that share a key into one in-flight task."""

    def __init__(self) -> None:
        self._inflight: Dict[str, asyncio.Future[Any]] = {}

    def in_flight(self, key: str) -> bool:
        task = self._inflight.get(key)
        return task is not None and not task.done()

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task

            def _release(done: asyncio.Future[Any], key: str = key) -> None:
                if self._inflight.get(key) is done:
                    self._inflight.pop(key, None)

            task.add_done_callback(_release)
        # a cancelled waiter must not cancel the shared task
        return await asyncio.shield(task)
