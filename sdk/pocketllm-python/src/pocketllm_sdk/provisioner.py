"""Resumable, checksum-verified provisioning of model artifacts onto local storage."""

import asyncio
import hashlib
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from http.client import HTTPException
from pathlib import Path

from pydantic import ValidationError

from pocketllm_sdk.cancellation import CancellationToken
from pocketllm_sdk.config import get_sdk_config
from pocketllm_sdk.errors import IntegrityError, ProvisioningError, ProvisioningIOError
from pocketllm_sdk.logger import logger
from pocketllm_sdk.schemas import ArtifactStatus, ModelDescriptor, ProvisionResult
from pocketllm_sdk.sources import ArtifactSource

PART_SUFFIX = ".part"
STATUS_FILENAME = "status.json"
HASH_BUFFER_SIZE = 1024 * 1024
MB = 1024 * 1024

ProgressSink = Callable[[int, int], None]


def sha256_file(path: Path, chunk_size: int = HASH_BUFFER_SIZE) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            data = f.read(chunk_size)
            if not data:
                break
            h.update(data)
    return h.hexdigest()


@dataclass
class TransferState:
    """Bookkeeping for one provisioning run."""

    dest_path: Path
    partial_path: Path
    bytes_copied: int = 0
    total_bytes: int = 0
    resumed: bool = False


class _ProgressReporter:
    """Coalesces progress calls to one per `interval` bytes, plus forced ones."""

    def __init__(self, sink: ProgressSink | None, total: int, interval: int):
        self.sink = sink
        self.total = total
        self.interval = interval
        self.last_reported: int | None = None

    def report(self, copied: int, force: bool = False) -> None:
        if self.sink is None:
            return
        if not force and self.last_reported is not None and copied - self.last_reported < self.interval:
            return
        self.last_reported = copied
        self.sink(copied, self.total)


class _ThroughputLog:
    def __init__(self, start_bytes: int):
        self.start_ns = time.monotonic_ns()
        self.start_bytes = start_bytes
        self.last_ns = self.start_ns
        self.last_bytes = start_bytes

    def tick(self, copied: int, total: int) -> None:
        now = time.monotonic_ns()
        since_last_ms = (now - self.last_ns) / 1_000_000
        if since_last_ms < 1000:
            return
        elapsed_ms = (now - self.start_ns) / 1_000_000
        inst = (copied - self.last_bytes) / MB / (since_last_ms / 1000)
        avg = (copied - self.start_bytes) / MB / max(elapsed_ms / 1000, 0.001)
        logger.debug(f"Copy progress: {copied}/{total or -1} bytes, inst={inst:.2f} MB/s, avg={avg:.2f} MB/s")
        self.last_ns = now
        self.last_bytes = copied


class ProvisionerBase:
    """Shared layout and transfer logic for the sync and async provisioners.

    Artifacts are stored per (name, version) as::

        <store_root>/models/<name>/<version>/<filename>
        <store_root>/models/<name>/<version>/<filename>.part   (during transfer)
        <store_root>/models/<name>/<version>/status.json
    """

    def __init__(
        self,
        source: ArtifactSource,
        store_root: str | Path | None = None,
        chunk_size: int | None = None,
        progress_interval: int | None = None,
    ):
        conf = get_sdk_config().provisioning
        self.source = source
        self.store_root = Path(store_root) if store_root is not None else conf.store_root
        self.chunk_size = chunk_size or conf.chunk_size
        self.progress_interval = progress_interval or conf.progress_interval

    def artifact_dir(self, descriptor: ModelDescriptor) -> Path:
        return self.store_root / "models" / descriptor.name / descriptor.version

    def artifact_path(self, descriptor: ModelDescriptor) -> Path:
        return self.artifact_dir(descriptor) / descriptor.filename

    def partial_path(self, descriptor: ModelDescriptor) -> Path:
        return self.artifact_dir(descriptor) / f"{descriptor.filename}{PART_SUFFIX}"

    def status_path(self, descriptor: ModelDescriptor) -> Path:
        return self.artifact_dir(descriptor) / STATUS_FILENAME

    def read_status(self, descriptor: ModelDescriptor) -> ArtifactStatus | None:
        """Return the sidecar of a committed artifact, if one was written.

        The sidecar is informational. Readiness is decided by checksum.
        """
        path = self.status_path(descriptor)
        try:
            return ArtifactStatus.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as exc:
            logger.warning(f"Ignoring unreadable status file {path}: {exc}")
            return None

    def _run(
        self,
        descriptor: ModelDescriptor,
        progress: ProgressSink | None,
        cancel: CancellationToken,
    ) -> ProvisionResult:
        started = time.monotonic()
        logger.info(f"Provisioning {descriptor.name}@{descriptor.version} ({descriptor.filename})")
        try:
            result = self._provision_or_raise(descriptor, progress, cancel)
        except ProvisioningError as exc:
            logger.error(f"Provisioning {descriptor.name}@{descriptor.version} failed: {exc}")
            return ProvisionResult(ready=False, reason=str(exc), error=exc)

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(f"Provisioning finished in {elapsed_ms:.0f}ms: ready={result.ready}, reason={result.reason}")
        return result

    def _provision_or_raise(
        self,
        descriptor: ModelDescriptor,
        progress: ProgressSink | None,
        cancel: CancellationToken,
    ) -> ProvisionResult:
        try:
            return self._provision(descriptor, progress, cancel)
        except (OSError, HTTPException) as exc:
            raise ProvisioningIOError(f"I/O failure while provisioning {descriptor.filename}: {exc}") from exc

    def _provision(
        self,
        descriptor: ModelDescriptor,
        progress: ProgressSink | None,
        cancel: CancellationToken,
    ) -> ProvisionResult:
        state = TransferState(
            dest_path=self.artifact_path(descriptor),
            partial_path=self.partial_path(descriptor),
            total_bytes=descriptor.size_bytes,
        )
        state.dest_path.parent.mkdir(parents=True, exist_ok=True)

        if state.dest_path.exists():
            digest = sha256_file(state.dest_path)
            if digest == descriptor.sha256:
                logger.info(f"Artifact already present and verified: {state.dest_path}")
                return ProvisionResult(
                    ready=True,
                    path=state.dest_path,
                    context_hint=descriptor.n_ctx_hint,
                    reason="Model already present",
                )
            logger.warning(f"Existing artifact {state.dest_path} has checksum {digest}; removing it")
            state.dest_path.unlink()

        # The sidecar only describes a committed, verified artifact.
        self.status_path(descriptor).unlink(missing_ok=True)
        self._transfer(descriptor, state, progress, cancel)

        if cancel.cancelled:
            state.partial_path.unlink(missing_ok=True)
            logger.warning("Provisioning cancelled; partial file removed")
            return ProvisionResult(ready=False, cancelled=True, reason="Cancelled by user")

        digest = sha256_file(state.partial_path)
        if digest != descriptor.sha256:
            state.partial_path.unlink(missing_ok=True)
            raise IntegrityError(descriptor.sha256, digest)

        os.replace(state.partial_path, state.dest_path)
        self._write_status(descriptor)
        logger.info(f"Committed {state.dest_path} (resumed={state.resumed})")
        return ProvisionResult(
            ready=True,
            path=state.dest_path,
            context_hint=descriptor.n_ctx_hint,
            reason="Model copied",
        )

    def _transfer(
        self,
        descriptor: ModelDescriptor,
        state: TransferState,
        progress: ProgressSink | None,
        cancel: CancellationToken,
    ) -> None:
        total = state.total_bytes
        existing = state.partial_path.stat().st_size if state.partial_path.exists() else 0
        if total > 0 and existing > total:
            logger.warning(f"Partial file holds {existing} bytes, more than the expected {total}; restarting")
            state.partial_path.unlink()
            existing = 0

        state.bytes_copied = existing
        state.resumed = existing > 0
        if state.resumed:
            logger.info(f"Resuming transfer at offset {existing}")

        reporter = _ProgressReporter(progress, total, self.progress_interval)
        throughput = _ThroughputLog(existing)

        with self.source.open(descriptor.filename, offset=existing) as src:
            with open(state.partial_path, "ab" if existing else "wb") as out:
                reporter.report(state.bytes_copied, force=True)
                while not cancel.cancelled:
                    size = self.chunk_size
                    if total > 0:
                        size = min(size, total - state.bytes_copied)
                        if size <= 0:
                            break
                    chunk = src.read(size)
                    if not chunk:
                        break
                    out.write(chunk)
                    state.bytes_copied += len(chunk)
                    reporter.report(state.bytes_copied)
                    throughput.tick(state.bytes_copied, total)

                if cancel.cancelled:
                    return
                out.flush()
                os.fsync(out.fileno())

        reporter.report(state.bytes_copied, force=True)

    def _write_status(self, descriptor: ModelDescriptor) -> None:
        status = ArtifactStatus(
            ready=True,
            sha256=descriptor.sha256,
            version=descriptor.version,
            size=descriptor.size_bytes,
        )
        self.status_path(descriptor).write_text(status.model_dump_json(), encoding="utf-8")


class Provisioner(ProvisionerBase):
    """Blocking provisioner; run it from a worker thread in interactive apps."""

    def ensure_ready(
        self,
        descriptor: ModelDescriptor,
        progress: ProgressSink | None = None,
        cancel: CancellationToken | None = None,
    ) -> ProvisionResult:
        """Guarantee a verified artifact for `descriptor` exists locally.

        Args:
            descriptor: The model to provision.
            progress: Called with `(copied, total)` at the start of a transfer,
                every `progress_interval` bytes and once more at the end.
            cancel: Checked between chunks. A cancelled run removes its
                partial file and returns a result with `cancelled=True`.

        Returns:
            The provisioning outcome. Errors are reported in the result and
            are safe to retry by calling again.
        """
        return self._run(descriptor, progress, cancel or CancellationToken())

    def ensure_manifest_ready(
        self,
        name: str | None = None,
        progress: ProgressSink | None = None,
        cancel: CancellationToken | None = None,
    ) -> ProvisionResult:
        """Read the source manifest and provision `name`, or its first model."""
        try:
            manifest = self.source.read_manifest()
            descriptor = manifest.find(name) if name else manifest.first()
        except ProvisioningError as exc:
            logger.warning(f"Manifest unusable: {exc}")
            return ProvisionResult(ready=False, reason=str(exc), error=exc)
        return self.ensure_ready(descriptor, progress, cancel)


class AsyncProvisioner(ProvisionerBase):
    """Asyncio-friendly provisioner.

    The transfer runs in the default executor. Progress callbacks are
    delivered on the event loop, never on the worker thread. Cancelling the
    awaiting task cancels the transfer; the task finishes once the worker
    has cleaned up.
    """

    async def ensure_ready(
        self,
        descriptor: ModelDescriptor,
        progress: ProgressSink | None = None,
        cancel: CancellationToken | None = None,
    ) -> ProvisionResult:
        loop = asyncio.get_running_loop()
        cancel = cancel or CancellationToken()

        sink = None
        if progress is not None:

            def sink(copied: int, total: int) -> None:
                loop.call_soon_threadsafe(progress, copied, total)

        future = loop.run_in_executor(None, self._run, descriptor, sink, cancel)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            cancel.cancel()
            # Let the worker stop at its next chunk and remove the partial file.
            await asyncio.wait({future})
            raise

    async def ensure_manifest_ready(
        self,
        name: str | None = None,
        progress: ProgressSink | None = None,
        cancel: CancellationToken | None = None,
    ) -> ProvisionResult:
        loop = asyncio.get_running_loop()
        try:
            manifest = await loop.run_in_executor(None, self.source.read_manifest)
            descriptor = manifest.find(name) if name else manifest.first()
        except ProvisioningError as exc:
            logger.warning(f"Manifest unusable: {exc}")
            return ProvisionResult(ready=False, reason=str(exc), error=exc)
        return await self.ensure_ready(descriptor, progress, cancel)
