import asyncio
import io
import threading
import time

from pocketllm_sdk.engine import StreamCallbacks


class ScriptedEngine:
    """In-process engine that replays a token script from the calling thread.

    Args:
        tokens: Tokens emitted in order.
        hold_after: Block after emitting this many tokens until `cancel()`.
        ignore_cancel: Keep emitting after a cancel, like an engine that
            only notices cancellation late.
        after_terminal: Tokens emitted after the terminal callback.
        on_start: Called when a streaming call starts, before the engine
            resets its cancel flag.
    """

    def __init__(
        self,
        tokens=("Hel", "lo"),
        init_ok=True,
        init_error=None,
        start_ok=True,
        error=None,
        complete=True,
        hold_after=None,
        ignore_cancel=False,
        after_terminal=(),
        raise_on_stream=None,
        on_start=None,
    ):
        self.tokens = list(tokens)
        self.init_ok = init_ok
        self.init_error = init_error
        self.start_ok = start_ok
        self.error = error
        self.complete = complete
        self.hold_after = hold_after
        self.ignore_cancel = ignore_cancel
        self.after_terminal = list(after_terminal)
        self.raise_on_stream = raise_on_stream
        self.on_start = on_start

        self.calls: list[tuple] = []
        self.cancel_calls = 0
        self.release_calls = 0
        self.emitted: list[str] = []
        self.cancelled = threading.Event()
        self.holding = threading.Event()
        self._lock = threading.Lock()
        self._active = 0
        self.max_concurrent_calls = 0

    def _enter(self, *call):
        with self._lock:
            self.calls.append(call)
            self._active += 1
            self.max_concurrent_calls = max(self.max_concurrent_calls, self._active)

    def _exit(self):
        with self._lock:
            self._active -= 1

    def init(self, model_path, context_size, thread_count):
        self._enter("init", model_path, context_size, thread_count)
        try:
            self.cancelled.clear()
            if self.init_error is not None:
                raise self.init_error
            return self.init_ok
        finally:
            self._exit()

    def infer(self, prompt, max_tokens, temperature, top_p):
        self._enter("infer", prompt)
        try:
            return "".join(self.tokens)
        finally:
            self._exit()

    def infer_streaming(self, prompt, max_tokens, temperature, top_p, callbacks: StreamCallbacks):
        self._enter("infer_streaming", prompt, max_tokens, temperature, top_p)
        try:
            return self._stream(callbacks)
        finally:
            self._exit()

    def _stream(self, callbacks):
        if self.on_start is not None:
            self.on_start()
        self.cancelled.clear()
        if self.raise_on_stream is not None:
            raise self.raise_on_stream
        if not self.start_ok:
            return False
        for i, token in enumerate(self.tokens):
            if i == self.hold_after:
                self.holding.set()
                self.cancelled.wait(5)
            if self.cancelled.is_set() and not self.ignore_cancel:
                return True
            self.emitted.append(token)
            callbacks.on_token(token)
        if self.error is not None:
            callbacks.on_error(self.error)
        elif self.complete:
            callbacks.on_completed()
        for token in self.after_terminal:
            callbacks.on_token(token)
        if self.after_terminal:
            callbacks.on_completed()
        return True

    def cancel(self):
        with self._lock:
            self.cancel_calls += 1
        self.cancelled.set()

    def release(self):
        self._enter("release")
        try:
            self.release_calls += 1
        finally:
            self._exit()

    def call_names(self):
        return [call[0] for call in self.calls]


async def wait_until(predicate, timeout: float = 5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def wait_for_event(event: threading.Event, timeout: float = 5.0):
    assert await asyncio.to_thread(event.wait, timeout)


class GatedSource:
    """Serves `data`, pausing once `pause_after` bytes were read until `gate` opens.

    `gate` is anything with a `wait(timeout)` method, such as a
    `threading.Event` or a `CancellationToken`.
    """

    def __init__(self, data: bytes, pause_after: int, gate):
        self.data = data
        self.pause_after = pause_after
        self.gate = gate
        self.paused = threading.Event()
        self.opens: list[int] = []

    def read_manifest(self):
        raise AssertionError("manifest not expected")

    def open(self, filename, offset=0):
        self.opens.append(offset)
        source = self

        class _Stream(io.BytesIO):
            def read(self, size=-1):
                if self.tell() >= source.pause_after and not source.paused.is_set():
                    source.paused.set()
                    source.gate.wait(5)
                return super().read(size)

        stream = _Stream(self.data)
        stream.seek(offset)
        return stream
