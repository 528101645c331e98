"""Adapts callback-driven engine streaming into an ordered async event sequence."""

import asyncio
from collections.abc import AsyncIterator, Callable
from concurrent.futures import Executor
from threading import Condition

from pocketllm_sdk.cancellation import CancellationToken
from pocketllm_sdk.config import get_sdk_config
from pocketllm_sdk.engine import Engine, StreamCallbacks
from pocketllm_sdk.errors import EngineInferError, StreamProtocolError
from pocketllm_sdk.logger import logger
from pocketllm_sdk.schemas import CompletedEvent, ErrorEvent, GenerationPreset, StreamEvent, TokenEvent, is_terminal

_END = object()


class _Handoff:
    """Bounded handoff from producer threads to a single consumer on the loop.

    Producers wait at most `timeout` seconds for room. Terminal events and
    the end marker bypass the bound, so at most one extra item is ever
    queued. Once a terminal event or the end marker is accepted, or the
    consumer closes the handoff, every later offer is dropped.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        capacity: int,
        timeout: float,
        on_stall: Callable[[], None],
    ):
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self._cond = Condition()
        self._capacity = capacity
        self._timeout = timeout
        self._on_stall = on_stall
        self._pending = 0
        self._closed = False
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def offer(self, event: StreamEvent) -> bool:
        terminal = is_terminal(event)
        stalled = False
        with self._cond:
            if self._closed or self._finished:
                return False
            if not terminal and not self._cond.wait_for(self._has_room, self._timeout):
                stalled = True
                terminal = True
                event = ErrorEvent(
                    "stream consumer stalled",
                    StreamProtocolError(f"no room in the event buffer for {self._timeout}s"),
                )
            if not self._put(event, terminal):
                return False

        if stalled:
            logger.warning("Stream consumer stalled; cancelling generation")
            self._on_stall()
            return False
        return True

    def end(self) -> None:
        """Finish the sequence without a terminal event."""
        with self._cond:
            if not (self._closed or self._finished):
                self._put(_END, True)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    async def take(self):
        item = await self._queue.get()
        with self._cond:
            self._pending -= 1
            self._cond.notify_all()
        return item

    def _has_room(self) -> bool:
        return self._closed or self._pending < self._capacity

    def _put(self, item, terminal: bool) -> bool:
        if self._closed or self._finished:
            return False
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # The consumer's loop is gone.
            self._closed = True
            return False
        self._pending += 1
        if terminal:
            self._finished = True
        return True


class StreamingBridge:
    """Turns one `Engine.infer_streaming` call into an async event sequence.

    A bridge serves exactly one generation job. The engine call runs on
    `executor` and its callbacks may fire on any thread. Events reach the
    consumer in production order, followed by exactly one `CompletedEvent`
    or `ErrorEvent`. A cancelled job ends its sequence without a terminal
    event, so callers can tell a user stop from a failure.

    The engine's cancellation signal is tied to `token` and fires at most
    once: when the token is cancelled, when the consumer abandons the
    sequence before its terminal event, or when the consumer stalls.
    """

    def __init__(
        self,
        engine: Engine,
        executor: Executor | None = None,
        token: CancellationToken | None = None,
        buffer_size: int | None = None,
        handoff_timeout: float | None = None,
    ):
        conf = get_sdk_config().session
        self.engine = engine
        self.executor = executor
        self.token = token or CancellationToken()
        self.buffer_size = buffer_size or conf.buffer_size
        self.handoff_timeout = handoff_timeout or conf.handoff_timeout
        self.worker: asyncio.Future | None = None
        self._used = False
        self.token.add_callback(self.engine.cancel)

    def cancel(self) -> None:
        self.token.cancel()

    async def stream(self, prompt: str, preset: GenerationPreset) -> AsyncIterator[StreamEvent]:
        """Start generation and yield its events.

        Close the generator (or cancel the consuming task) to abandon the job.
        """
        if self._used:
            raise RuntimeError("A StreamingBridge serves a single generation job")
        self._used = True

        loop = asyncio.get_running_loop()
        handoff = _Handoff(loop, self.buffer_size, self.handoff_timeout, on_stall=self.token.cancel)
        self.token.add_callback(handoff.end)
        self.worker = loop.run_in_executor(self.executor, self._produce, handoff, prompt, preset)

        delivered_terminal = False
        try:
            while True:
                item = await handoff.take()
                if item is _END:
                    break
                delivered_terminal = is_terminal(item)
                yield item
                if delivered_terminal:
                    break
        finally:
            handoff.close()
            if not delivered_terminal:
                self.token.cancel()

    def _produce(self, handoff: _Handoff, prompt: str, preset: GenerationPreset) -> None:
        if self.token.cancelled:
            handoff.end()
            return

        resignalled = False

        def on_token(text: str) -> None:
            nonlocal resignalled
            if self.token.cancelled:
                # The engine resets its cancel flag when a call starts, which
                # can swallow a cancel issued just before. Signal it once more.
                if not resignalled:
                    resignalled = True
                    self.engine.cancel()
                return
            handoff.offer(TokenEvent(text))

        callbacks = StreamCallbacks(
            on_token=on_token,
            on_completed=lambda: handoff.offer(CompletedEvent()),
            on_error=lambda reason: handoff.offer(ErrorEvent(reason, EngineInferError(reason))),
        )
        try:
            started = self.engine.infer_streaming(
                prompt,
                preset.max_tokens,
                preset.temperature,
                preset.top_p,
                callbacks,
            )
        except Exception as exc:
            logger.exception("infer_streaming raised")
            reason = str(exc) or type(exc).__name__
            handoff.offer(ErrorEvent(reason, EngineInferError(reason)))
            return

        if handoff.finished:
            return
        if self.token.cancelled:
            handoff.end()
        elif not started:
            handoff.offer(ErrorEvent("failed to start", StreamProtocolError("engine declined to start streaming")))
        else:
            # The engine returned without reporting how it finished.
            handoff.offer(CompletedEvent())
