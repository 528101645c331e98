import asyncio
import logging
import sys

from pocketllm_sdk import AsyncProvisioner, DirectorySource, ProvisioningController, RamalamaEngine, SessionController
from pocketllm_sdk.schemas import ProvisioningState


def show_progress(state: ProvisioningState) -> None:
    print(f"\r[{state.stage.value}] {state.message or ''}", end="", flush=True)


async def present(session: SessionController) -> None:
    """Print the newest bot message as it grows."""
    current_id, shown = None, 0
    async for state in session.watch():
        if state.status_message:
            print(f"\n[{state.status_message}]", flush=True)
        if not state.messages:
            continue
        last = state.messages[-1]
        if last.id != current_id:
            current_id, shown = last.id, 0
        if last.text[shown:]:
            print(last.text[shown:], end="", flush=True)
            shown = len(last.text)


async def main(bundle_dir: str) -> None:
    preparation = ProvisioningController(AsyncProvisioner(DirectorySource(bundle_dir)))
    preparation.add_listener(show_progress)
    result = await preparation.start()
    print()
    if not result.ready:
        sys.exit(f"Model not ready: {result.reason}")

    async with SessionController(RamalamaEngine(), result.path, context_hint=result.context_hint) as session:
        presenter = asyncio.create_task(present(session))
        for prompt in sys.argv[2:] or ["How tall is Michael Jordan?"]:
            session.set_input(prompt)
            job = await session.send_message()
            if job is None:
                break
            await job.wait()
            await asyncio.sleep(0)
            print()
        presenter.cancel()


logging.basicConfig(level=logging.INFO)
asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "models_bootstrap"))
