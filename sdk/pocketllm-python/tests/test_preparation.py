import asyncio
import hashlib
import json
import threading

import pytest
from fakes import GatedSource, wait_for_event
from pydantic import ValidationError

from pocketllm_sdk.preparation import STATUS_CHECKING, ProvisioningController
from pocketllm_sdk.provisioner import AsyncProvisioner
from pocketllm_sdk.schemas import ModelDescriptor, ProvisioningStage, ProvisioningState
from pocketllm_sdk.sources import DirectorySource
from pocketllm_sdk.utils import human_bytes

PAYLOAD = bytes(range(256)) * 40


def make_descriptor(data: bytes = PAYLOAD) -> ModelDescriptor:
    return ModelDescriptor(
        name="tiny",
        filename="tiny.gguf",
        version="1",
        size_bytes=len(data),
        sha256=hashlib.sha256(data).hexdigest(),
        n_ctx_hint=2048,
    )


@pytest.fixture
def bundle(tmp_path):
    root = tmp_path / "bundle"
    root.mkdir()
    (root / "tiny.gguf").write_bytes(PAYLOAD)
    (root / "manifest.json").write_text(json.dumps({"models": [make_descriptor().model_dump()]}))
    return root


def make_controller(source, store, **kwargs):
    provisioner = AsyncProvisioner(source, store_root=store, chunk_size=1024, progress_interval=2048)
    return ProvisioningController(provisioner, **kwargs)


class TestProvisioningController:
    def test_initial_state_is_idle(self, bundle, tmp_path):
        controller = make_controller(DirectorySource(bundle), tmp_path / "store")

        assert controller.state == ProvisioningState()
        assert controller.state.stage is ProvisioningStage.IDLE
        assert controller.active is False

    @pytest.mark.asyncio
    async def test_done_snapshot_carries_model_path(self, bundle, tmp_path):
        controller = make_controller(DirectorySource(bundle), tmp_path / "store")

        result = await controller.start()

        state = controller.state
        assert result.ready is True
        assert state.done is True
        assert state.running is False
        assert state.progress == 1.0
        assert state.model_path == result.path
        assert state.model_path.read_bytes() == PAYLOAD
        assert state.context_hint == 2048

    @pytest.mark.asyncio
    async def test_publishes_copy_progress(self, bundle, tmp_path):
        controller = make_controller(DirectorySource(bundle), tmp_path / "store")
        seen: list[ProvisioningState] = []
        controller.add_listener(seen.append)

        await controller.start()

        assert seen[0].stage is ProvisioningStage.PREPARING
        assert seen[0].message == STATUS_CHECKING
        copying = [state for state in seen if state.stage is ProvisioningStage.COPYING]
        assert copying
        fractions = [state.progress for state in copying]
        assert fractions == sorted(fractions)
        assert copying[-1].bytes_copied == copying[-1].total_bytes == len(PAYLOAD)
        assert copying[-1].message == "Copied 10.00 KB / 10.00 KB"
        assert seen[-1].stage is ProvisioningStage.DONE

    @pytest.mark.asyncio
    async def test_start_is_single_flight(self, tmp_path):
        gate = threading.Event()
        source = GatedSource(PAYLOAD, pause_after=2048, gate=gate)
        controller = make_controller(source, tmp_path / "store", descriptor=make_descriptor())

        first = controller.start()
        await wait_for_event(source.paused)
        second = controller.start()
        gate.set()
        result = await first

        assert second is first
        assert result.ready is True
        assert source.opens == [0]

    @pytest.mark.asyncio
    async def test_start_after_completion_runs_again(self, bundle, tmp_path):
        controller = make_controller(DirectorySource(bundle), tmp_path / "store")

        first = controller.start()
        await first
        second = controller.start()
        await second

        assert second is not first
        assert controller.state.done is True

    @pytest.mark.asyncio
    async def test_cancel_stops_and_cleans_up(self, tmp_path):
        descriptor = make_descriptor()
        gate = threading.Event()
        source = GatedSource(PAYLOAD, pause_after=2048, gate=gate)
        controller = make_controller(source, tmp_path / "store", descriptor=descriptor)

        task = controller.start()
        await wait_for_event(source.paused)
        controller.cancel()
        gate.set()
        result = await task

        assert result.cancelled is True
        assert controller.state.stage is ProvisioningStage.CANCELLED
        assert controller.state.message == result.reason
        assert not any((tmp_path / "store").rglob("*.part"))
        assert not any((tmp_path / "store").rglob("tiny.gguf"))

    @pytest.mark.asyncio
    async def test_cancelling_the_task_publishes_cancelled(self, tmp_path):
        gate = threading.Event()
        source = GatedSource(PAYLOAD, pause_after=2048, gate=gate)
        controller = make_controller(source, tmp_path / "store", descriptor=make_descriptor())

        task = controller.start()
        await wait_for_event(source.paused)
        task.cancel()
        gate.set()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert controller.state.stage is ProvisioningStage.CANCELLED
        assert controller.state.message == "Cancelled by user"
        assert controller.active is False

    def test_cancel_without_a_run_is_a_noop(self, bundle, tmp_path):
        controller = make_controller(DirectorySource(bundle), tmp_path / "store")
        controller.cancel()
        assert controller.state.stage is ProvisioningStage.IDLE

    @pytest.mark.asyncio
    async def test_missing_manifest_is_an_error_state(self, tmp_path):
        controller = make_controller(DirectorySource(tmp_path / "nowhere"), tmp_path / "store")

        result = await controller.start()

        assert result.ready is False
        assert controller.state.stage is ProvisioningStage.ERROR
        assert "not found" in controller.state.message
        assert controller.state.model_path is None

    @pytest.mark.asyncio
    async def test_unknown_model_name_is_an_error_state(self, bundle, tmp_path):
        controller = make_controller(DirectorySource(bundle), tmp_path / "store", name="missing")

        await controller.start()

        assert controller.state.stage is ProvisioningStage.ERROR
        assert "missing" in controller.state.message

    @pytest.mark.asyncio
    async def test_watch_ends_on_the_latest_snapshot(self, bundle, tmp_path):
        controller = make_controller(DirectorySource(bundle), tmp_path / "store")

        await controller.start()
        stream = controller.watch()
        state = await stream.__anext__()
        await stream.aclose()

        assert state.done is True


def test_snapshots_are_frozen():
    state = ProvisioningState(stage=ProvisioningStage.COPYING, progress=0.5)
    with pytest.raises(ValidationError):
        state.progress = 0.75


def test_progress_is_bounded():
    with pytest.raises(ValidationError):
        ProvisioningState(progress=1.5)


@pytest.mark.parametrize(
    "count, expected",
    [
        (0, "0 B"),
        (512, "512 B"),
        (1536, "1.50 KB"),
        (2 * 1024**2, "2.00 MB"),
        (3 * 1024**3 + 1024**3 // 4, "3.25 GB"),
    ],
)
def test_human_bytes(count, expected):
    assert human_bytes(count) == expected
