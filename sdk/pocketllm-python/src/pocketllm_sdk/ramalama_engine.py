"""An `Engine` that serves a provisioned GGUF file through ramalama."""

import copy
import json
import threading
import time
import urllib.request
from http.client import HTTPException
from pathlib import Path
from types import SimpleNamespace

from ramalama.command.factory import assemble_command
from ramalama.config import Config, get_config
from ramalama.engine import inspect as inspect_container
from ramalama.engine import stop_container
from ramalama.transports.transport_factory import New

from pocketllm_sdk.config import get_sdk_config
from pocketllm_sdk.engine import StreamCallbacks
from pocketllm_sdk.errors import EngineInferError, NoContainerManagerError, ServerTimeoutError
from pocketllm_sdk.logger import logger
from pocketllm_sdk.utils import ServerAttributes, build_chat_request, delta_text, iter_sse_data

_HEALTH_ERRORS = (ConnectionError, HTTPException, OSError, UnicodeDecodeError)


class RamalamaEngine:
    """Runs a llama.cpp server for the model via ramalama and talks to it over HTTP.

    `init` starts (or restarts) the server with the requested context size and
    thread count and blocks until it is healthy. Streaming reads the
    OpenAI-compatible SSE response line by line and checks the cancel flag
    between lines.
    """

    def __init__(
        self,
        config: Config | None = None,
        image: str | None = None,
        timeout: float | None = None,
        ngl: int | None = None,
        container: bool | None = None,
        request_timeout: float = 300,
    ):
        self.conf = config or get_config()
        sdk_config = get_sdk_config()

        self.image = image or sdk_config.container.image
        self.timeout = timeout or sdk_config.container.timeout
        self.bind_host = sdk_config.connection.bind_host
        self.connect_host = sdk_config.connection.connect_host
        self.ngl = ngl
        self.container = container
        self.request_timeout = request_timeout

        self.server_attributes = ServerAttributes(host=self.connect_host)
        self.args: SimpleNamespace | None = None
        self.model_alias: str | None = None
        self.process = None
        self._transport = None
        self._cancel = threading.Event()

    def _build_args(self, model_path: str, context_size: int, thread_count: int) -> SimpleNamespace:
        args = SimpleNamespace(
            engine=self.conf.engine,
            container=self.container if self.container is not None else True,
            store=self.conf.store,
            runtime=self.conf.runtime,
            subcommand="serve",
            MODEL=Path(model_path).resolve().as_uri(),
            dryrun=False,
            generate=None,
            noout=True,
            image=self.image,
            host=self.bind_host,
            context=context_size,
            threads=thread_count,
            ngl=self.ngl if self.ngl is not None else self.conf.ngl,
            temp=self.conf.temp,
            max_tokens=self.conf.max_tokens,
            cache_reuse=self.conf.cache_reuse,
            webui="off",
            thinking=self.conf.thinking,
            runtime_args=[],
            seed=None,
            debug=False,
            model_draft=None,
            api=None,
            quiet=True,
            name="",
            pull="never",
        )
        return args

    def init(self, model_path: str, context_size: int, thread_count: int) -> bool:
        """Serve `model_path`, replacing any model served earlier.

        Returns:
            True once the server reports healthy, False on any failure.
        """
        if self.process is not None or self.server_attributes.port is not None:
            self.release()

        self._cancel.clear()
        self.args = self._build_args(model_path, context_size, thread_count)
        try:
            self._serve()
        except Exception:
            logger.exception(f"Could not serve {model_path}")
            self.release()
            return False
        return True

    def _serve(self) -> None:
        args = self.args
        if self.conf.engine is None and args.container:
            raise NoContainerManagerError(
                "No detected container manager installed on this system.\n"
                "Please install either docker or podman to proceed"
            )

        transport = New(args.MODEL, args)
        self.model_alias = transport.model_alias
        transport.ensure_model_exists(args)
        self.server_attributes.open()
        args.port = self.server_attributes.port
        cmd = assemble_command(args)  # type: ignore
        logger.info(f"Starting model server on port {args.port}")
        self._transport = transport
        self.process = transport.serve_nonblocking(args, cmd)

        start_time = time.time()
        while True:
            if startup_failure := self._startup_failure():
                raise RuntimeError(startup_failure)
            try:
                if self.server_attributes.is_healthy():
                    break
            except _HEALTH_ERRORS:
                pass
            if time.time() - start_time > self.timeout:
                raise ServerTimeoutError(f"Server failed to become healthy within {self.timeout} seconds")
            time.sleep(0.1)

        self.server_attributes.ready = True

    def _startup_failure(self) -> str | None:
        if self.args.container:
            if not self.args.name:
                return None
            try:
                status = inspect_container(self.args, self.args.name, format="{{ .State.Status }}", ignore_stderr=True)
            except Exception as exc:
                return f"Container '{self.args.name}' disappeared before becoming healthy: {exc}"
            status = status.strip()
            if status in {"running", "created", "restarting"}:
                return None
            return f"Container '{self.args.name}' entered status '{status}' before becoming healthy."

        if self.process is None:
            return "Server process was not created."
        if (exit_code := self.process.poll()) is None:
            return None
        return f"Server process exited with code {exit_code} before becoming healthy."

    def infer(self, prompt: str, max_tokens: int, temperature: float, top_p: float) -> str:
        """Run a blocking, non-streaming completion.

        Raises:
            EngineInferError: If no model is served or the request fails.
        """
        if not self.server_attributes.ready:
            raise EngineInferError("No model is being served. Call init() first.")

        request = build_chat_request(
            self.server_attributes.chat_url, self.model_alias, prompt, max_tokens, temperature, top_p, stream=False
        )
        try:
            with urllib.request.urlopen(request, timeout=self.request_timeout) as response:
                body = json.loads(response.read())
            return body["choices"][0]["message"]["content"]
        except (OSError, HTTPException, ValueError, KeyError, IndexError) as exc:
            raise EngineInferError(f"Completion request failed: {exc}") from exc

    def infer_streaming(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
        top_p: float,
        callbacks: StreamCallbacks,
    ) -> bool:
        if not self.server_attributes.ready:
            return False

        self._cancel.clear()
        request = build_chat_request(
            self.server_attributes.chat_url, self.model_alias, prompt, max_tokens, temperature, top_p, stream=True
        )
        try:
            response = urllib.request.urlopen(request, timeout=self.request_timeout)
        except (OSError, HTTPException) as exc:
            logger.error(f"Could not start streaming completion: {exc}")
            return False

        with response:
            try:
                for data in iter_sse_data(response):
                    if self._cancel.is_set():
                        return True
                    if data == "[DONE]":
                        break
                    if text := delta_text(json.loads(data)):
                        callbacks.on_token(text)
            except (OSError, HTTPException, ValueError) as exc:
                if not self._cancel.is_set():
                    callbacks.on_error(f"Stream interrupted: {exc}")
                return True

        if not self._cancel.is_set():
            callbacks.on_completed()
        return True

    def cancel(self) -> None:
        self._cancel.set()

    def release(self) -> None:
        """Stop the server and release its port."""
        args = self.args
        if args is not None and args.container and args.name:
            stop_args = copy.copy(args)
            stop_args.ignore = True
            stop_container(stop_args, args.name, remove=True)
        elif self.process is not None and self._transport is not None:
            self._transport._cleanup_server_process(self.process)
        self.server_attributes.close()
        if args is not None:
            try:
                del args.port
            except AttributeError:
                pass
        self.process = None
