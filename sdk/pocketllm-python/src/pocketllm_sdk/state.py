"""Single-writer state publication with immutable snapshots."""

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Generic, TypeVar

from pocketllm_sdk.logger import logger

T = TypeVar("T")


class StateStore(Generic[T]):
    """Holds the latest snapshot and broadcasts every replacement.

    Only the owner calls `publish`. Readers either register a synchronous
    listener or iterate `watch()`, which is conflated: a slow reader skips
    intermediate snapshots and always sees the newest one.
    """

    def __init__(self, initial: T):
        self._value = initial
        self._listeners: list[Callable[[T], None]] = []
        self._watchers: set[asyncio.Queue[T]] = set()

    @property
    def value(self) -> T:
        return self._value

    def publish(self, value: T) -> None:
        self._value = value
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception(f"State listener {listener!r} failed")
        for queue in self._watchers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(value)

    def add_listener(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register `listener` and return a function that unregisters it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def watch(self) -> AsyncIterator[T]:
        """Yield the current snapshot, then each newer one as it is published."""
        queue: asyncio.Queue[T] = asyncio.Queue(maxsize=1)
        queue.put_nowait(self._value)
        self._watchers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._watchers.discard(queue)
