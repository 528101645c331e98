"""Publishes the progress of a provisioning run as immutable snapshots."""

import asyncio
from collections.abc import AsyncIterator, Callable

from pocketllm_sdk.cancellation import CancellationToken
from pocketllm_sdk.logger import logger
from pocketllm_sdk.provisioner import AsyncProvisioner
from pocketllm_sdk.schemas import ModelDescriptor, ProvisioningStage, ProvisioningState, ProvisionResult
from pocketllm_sdk.state import StateStore
from pocketllm_sdk.utils import human_bytes

STATUS_CHECKING = "Checking model..."
STATUS_UNKNOWN_ERROR = "Unknown error"


class ProvisioningController:
    """Runs one provisioning job at a time and publishes `ProvisioningState`.

    Snapshots are published on the event loop that called `start`, so
    presenters read them without blocking the transfer.

    Example:
        controller = ProvisioningController(AsyncProvisioner(DirectorySource(bundle)))
        result = await controller.start()
        if controller.state.done:
            ...
    """

    def __init__(
        self,
        provisioner: AsyncProvisioner,
        descriptor: ModelDescriptor | None = None,
        name: str | None = None,
    ):
        self._provisioner = provisioner
        self._descriptor = descriptor
        self._name = name
        self._store: StateStore[ProvisioningState] = StateStore(ProvisioningState())
        self._task: asyncio.Task | None = None
        self._token: CancellationToken | None = None

    @property
    def state(self) -> ProvisioningState:
        return self._store.value

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_listener(self, listener: Callable[[ProvisioningState], None]) -> Callable[[], None]:
        return self._store.add_listener(listener)

    def watch(self) -> AsyncIterator[ProvisioningState]:
        return self._store.watch()

    def start(self) -> "asyncio.Task[ProvisionResult]":
        """Start provisioning, or return the run already in progress."""
        if self.active:
            return self._task

        self._token = CancellationToken()
        self._store.publish(ProvisioningState(stage=ProvisioningStage.PREPARING, message=STATUS_CHECKING))
        self._task = asyncio.create_task(self._run(self._token))
        return self._task

    def cancel(self) -> None:
        """Ask the active run to stop at its next chunk."""
        if self._token is not None:
            self._token.cancel()

    async def _run(self, token: CancellationToken) -> ProvisionResult:
        try:
            if self._descriptor is not None:
                result = await self._provisioner.ensure_ready(self._descriptor, self._on_progress, token)
            else:
                result = await self._provisioner.ensure_manifest_ready(self._name, self._on_progress, token)
        except asyncio.CancelledError:
            self._store.publish(
                self.state.model_copy(update={"stage": ProvisioningStage.CANCELLED, "message": "Cancelled by user"})
            )
            raise

        current = self.state
        if result.ready:
            state = current.model_copy(
                update={
                    "stage": ProvisioningStage.DONE,
                    "progress": 1.0,
                    "message": result.reason,
                    "model_path": result.path,
                    "context_hint": result.context_hint,
                }
            )
        elif result.cancelled:
            state = current.model_copy(update={"stage": ProvisioningStage.CANCELLED, "message": result.reason})
        else:
            state = current.model_copy(
                update={"stage": ProvisioningStage.ERROR, "message": result.reason or STATUS_UNKNOWN_ERROR}
            )
        logger.debug(f"Provisioning stage {current.stage.value} -> {state.stage.value}")
        self._store.publish(state)
        return result

    def _on_progress(self, copied: int, total: int) -> None:
        if not self.active:
            return
        fraction = min(max(copied / total, 0.0), 1.0) if total > 0 else 0.0
        self._store.publish(
            ProvisioningState(
                stage=ProvisioningStage.COPYING,
                progress=fraction,
                bytes_copied=copied,
                total_bytes=total,
                message=f"Copied {human_bytes(copied)} / {human_bytes(total)}",
            )
        )
