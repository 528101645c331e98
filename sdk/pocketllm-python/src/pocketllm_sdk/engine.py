"""The narrow inference capability consumed by sessions."""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class StreamCallbacks:
    """Receivers for a streaming call. May be invoked from any thread."""

    on_token: Callable[[str], None]
    on_completed: Callable[[], None]
    on_error: Callable[[str], None]


class Engine(Protocol):
    """An inference backend holding at most one loaded model.

    Callers never issue two of `init`, `infer`, `infer_streaming` and
    `release` at once. `cancel` is the exception: it may be called at any
    time, including while a streaming call is running or when nothing is.
    """

    def init(self, model_path: str, context_size: int, thread_count: int) -> bool: ...

    def infer(self, prompt: str, max_tokens: int, temperature: float, top_p: float) -> str: ...

    def infer_streaming(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
        top_p: float,
        callbacks: StreamCallbacks,
    ) -> bool:
        """Produce tokens through `callbacks`, returning once production ends.

        Returns False when streaming could not start. A cancelled call
        returns without invoking a terminal callback. Implementations may
        reset their cancel flag when the call starts, so callers repeat
        `cancel` from `on_token` if they cancelled just before the call.
        """
        ...

    def cancel(self) -> None: ...

    def release(self) -> None: ...
