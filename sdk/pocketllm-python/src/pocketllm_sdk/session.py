"""Session controller: engine lifecycle and single-flight streaming generation."""

import asyncio
import itertools
import time
from collections.abc import AsyncIterator, Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import aclosing
from datetime import datetime, timezone
from pathlib import Path

from pocketllm_sdk.bridge import StreamingBridge
from pocketllm_sdk.cancellation import CancellationToken
from pocketllm_sdk.config import default_thread_count
from pocketllm_sdk.engine import Engine
from pocketllm_sdk.errors import EngineInitError
from pocketllm_sdk.logger import logger
from pocketllm_sdk.schemas import (
    DEFAULT_PRESETS,
    Author,
    CompletedEvent,
    ErrorEvent,
    GenerationPreset,
    Message,
    MessageMetrics,
    SessionPhase,
    SessionState,
    TokenEvent,
)
from pocketllm_sdk.state import StateStore

STATUS_LOADING = "Loading model..."
STATUS_GENERATING = "Generating response..."
STATUS_STOPPED = "Stopped."
STATUS_CLOSED = "Session closed."


class GenerationJob:
    """One in-flight streaming response, bound to its placeholder bot message."""

    def __init__(self, target_id: int, prompt: str, preset: GenerationPreset, bridge: StreamingBridge):
        self.target_id = target_id
        self.prompt = prompt
        self.preset = preset
        self.bridge = bridge
        self.task: asyncio.Task | None = None
        self.finished = False
        self.started_at = time.monotonic()
        self.first_token_at: float | None = None
        self.token_count = 0

    @property
    def token(self) -> CancellationToken:
        return self.bridge.token

    def finish(self) -> bool:
        """Mark the job finished. Returns False if it already was."""
        if self.finished:
            return False
        self.finished = True
        return True

    def metrics(self) -> MessageMetrics:
        if self.first_token_at is None:
            return MessageMetrics()
        latency_ms = (self.first_token_at - self.started_at) * 1000
        streaming_s = time.monotonic() - self.first_token_at
        tps = self.token_count / streaming_s if streaming_s > 0 else None
        return MessageMetrics(first_token_latency_ms=latency_ms, tokens_per_second=tps)

    async def wait(self) -> None:
        """Wait for the job's task to end, however it ends."""
        if self.task is not None:
            await asyncio.wait({self.task})


class SessionController:
    """Owns an engine and drives one chat session against it.

    Every state change happens on the event loop that calls the controller
    and is published as an immutable `SessionState` snapshot. Engine calls
    other than `cancel` run on one dedicated worker thread, so they never
    overlap.

    Example:
        async with SessionController(engine, result.path, context_hint=result.context_hint) as session:
            session.set_input("Hello")
            job = await session.send_message()
            await job.wait()
    """

    def __init__(
        self,
        engine: Engine,
        model_path: str | Path,
        presets: Sequence[GenerationPreset] | None = None,
        context_hint: int | None = None,
        threads: int | None = None,
    ):
        self._engine = engine
        self._model_path = str(model_path)
        self._presets = tuple(presets) if presets else DEFAULT_PRESETS
        self._context_hint = context_hint
        self._threads = threads or default_thread_count()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pocketllm-engine")
        self._store: StateStore[SessionState] = StateStore(SessionState(presets=self._presets))
        self._ids = itertools.count(1)
        self._job: GenerationJob | None = None
        self._init_seq = 0
        self._engine_acquired = False
        self._closing: asyncio.Task | None = None

    @property
    def state(self) -> SessionState:
        return self._store.value

    @property
    def active_job(self) -> GenerationJob | None:
        return self._job

    @property
    def closed(self) -> bool:
        return self._closing is not None

    def add_listener(self, listener: Callable[[SessionState], None]) -> Callable[[], None]:
        return self._store.add_listener(listener)

    def watch(self) -> AsyncIterator[SessionState]:
        return self._store.watch()

    def _publish(self, **changes) -> None:
        previous = self._store.value
        state = previous.model_copy(update=changes)
        if state.phase is not previous.phase:
            logger.debug(f"Session phase {previous.phase.value} -> {state.phase.value}")
        self._store.publish(state)

    async def start(self) -> bool:
        """Load the model with the first preset."""
        return await self.select_preset(self._presets[0])

    def set_input(self, text: str) -> None:
        if self.closed:
            return
        self._publish(pending_input=text)

    async def select_preset(self, preset: GenerationPreset) -> bool:
        """Switch presets, reinitializing the engine with its context length.

        Any active generation is cancelled first. Returns whether the model is
        ready afterwards.
        """
        if self.closed:
            return False
        state = self.state
        if preset == state.active_preset and state.phase is not SessionPhase.FAILED:
            return state.is_model_ready

        if self._job is not None:
            await self._cancel_job(self._job)

        self._init_seq += 1
        seq = self._init_seq
        self._publish(phase=SessionPhase.INITIALIZING, active_preset=preset, status_message=STATUS_LOADING)

        context_size = preset.context_length
        if self._context_hint:
            context_size = min(context_size, self._context_hint)

        loop = asyncio.get_running_loop()
        self._engine_acquired = True
        error: EngineInitError | None = None
        try:
            ok = await loop.run_in_executor(
                self._executor, self._engine.init, self._model_path, context_size, self._threads
            )
        except Exception as exc:
            logger.exception("Engine init raised")
            error = EngineInitError(str(exc) or type(exc).__name__)
        else:
            if not ok:
                error = EngineInitError(f"engine could not load {self._model_path}")

        if seq != self._init_seq:
            # Superseded by a later selection or by close().
            return False

        if error is not None:
            logger.error(f"Model not ready with preset {preset.name}: {error}")
            self._publish(phase=SessionPhase.FAILED, status_message=f"Could not load model: {error}")
            return False

        logger.info(f"Model ready with preset {preset.name} (n_ctx={context_size}, threads={self._threads})")
        self._publish(phase=SessionPhase.READY, status_message=None)
        return True

    async def send_message(self) -> GenerationJob | None:
        """Send the pending input as a prompt.

        Only acts when the session is ready and the trimmed input is not empty;
        otherwise returns None and leaves the state untouched.
        """
        state = self.state
        prompt = state.pending_input.strip()
        preset = state.active_preset
        if self.closed or state.phase is not SessionPhase.READY or not prompt or preset is None:
            return None

        now = datetime.now(timezone.utc)
        user_msg = Message(id=next(self._ids), author=Author.USER, text=prompt, created_at=now)
        bot_msg = Message(id=next(self._ids), author=Author.BOT, text="", created_at=now)

        bridge = StreamingBridge(self._engine, self._executor)
        job = GenerationJob(bot_msg.id, prompt, preset, bridge)
        self._job = job
        self._publish(
            messages=state.messages + (user_msg, bot_msg),
            pending_input="",
            phase=SessionPhase.GENERATING,
            status_message=STATUS_GENERATING,
        )
        job.task = asyncio.create_task(self._run_job(job))
        return job

    async def stop(self) -> bool:
        """Stop the active generation. Returns False when there was none."""
        job = self._job
        if job is None or self.state.phase is not SessionPhase.GENERATING:
            return False
        await self._cancel_job(job)
        self._publish(phase=SessionPhase.READY, status_message=STATUS_STOPPED)
        return True

    async def close(self) -> None:
        """Tear the session down and release the engine, exactly once."""
        if self._closing is None:
            self._init_seq += 1
            self._closing = asyncio.create_task(self._teardown())
        await asyncio.shield(self._closing)

    async def _teardown(self) -> None:
        if self._job is not None:
            await self._cancel_job(self._job)
        self._engine.cancel()

        loop = asyncio.get_running_loop()
        try:
            if self._engine_acquired:
                await loop.run_in_executor(self._executor, self._engine.release)
        finally:
            self._executor.shutdown(wait=False)
            self._publish(phase=SessionPhase.UNINITIALIZED, status_message=STATUS_CLOSED)
        logger.info("Session closed")

    async def _cancel_job(self, job: GenerationJob) -> None:
        job.finish()
        job.token.cancel()
        if job.task is not None:
            job.task.cancel()
            await job.wait()
        if self._job is job:
            self._job = None

    async def _run_job(self, job: GenerationJob) -> None:
        try:
            async with aclosing(job.bridge.stream(job.prompt, job.preset)) as events:
                async for event in events:
                    match event:
                        case TokenEvent(text=text):
                            self._on_token(job, text)
                        case CompletedEvent():
                            self._on_completed(job)
                        case ErrorEvent(reason=reason):
                            self._on_error(job, reason)
        except Exception as exc:
            logger.exception("Generation job failed")
            self._on_error(job, str(exc) or type(exc).__name__)
        else:
            if not job.finished:
                # The stream ended without a terminal event: the job was cancelled.
                self._finish(job)
                self._publish(phase=SessionPhase.READY, status_message=STATUS_STOPPED)

    def _finish(self, job: GenerationJob) -> bool:
        if not job.finish():
            return False
        if self._job is job:
            self._job = None
        return True

    def _replace_target(self, job: GenerationJob, update: Callable[[Message], Message]) -> tuple[Message, ...]:
        return tuple(update(m) if m.id == job.target_id else m for m in self.state.messages)

    def _on_token(self, job: GenerationJob, text: str) -> None:
        if job.finished:
            return
        if job.first_token_at is None:
            job.first_token_at = time.monotonic()
        job.token_count += 1
        messages = self._replace_target(job, lambda m: m.model_copy(update={"text": m.text + text}))
        self._publish(messages=messages)

    def _on_completed(self, job: GenerationJob) -> None:
        if not self._finish(job):
            return
        metrics = job.metrics()
        messages = self._replace_target(job, lambda m: m.model_copy(update={"metrics": metrics}))
        self._publish(messages=messages, phase=SessionPhase.READY, status_message=None)

    def _on_error(self, job: GenerationJob, reason: str) -> None:
        if not self._finish(job):
            return
        logger.warning(f"Generation failed: {reason}")
        self._publish(phase=SessionPhase.READY, status_message=reason)

    async def __aenter__(self):
        """Async context manager entry that loads the model."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit that releases the engine."""
        await self.close()
        return False
