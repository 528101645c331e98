"""Cooperative cancellation shared between the event loop and worker threads."""

from collections.abc import Callable
from threading import Event, Lock

from pocketllm_sdk.logger import logger


class CancellationToken:
    """A one-way flag checked at well-defined points by long-running work.

    Callbacks registered with `add_callback` run exactly once, on the thread
    that first calls `cancel()`. Registering on an already-cancelled token
    runs the callback immediately.
    """

    def __init__(self):
        self._event = Event()
        self._lock = Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Request cancellation. Returns False when it was already requested."""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []

        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception(f"Cancellation callback {callback!r} failed")
        return True

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)
