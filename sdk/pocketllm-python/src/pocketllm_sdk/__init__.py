"""Public SDK exports for PocketLLM Python."""

from .bridge import StreamingBridge
from .cancellation import CancellationToken
from .config import FrozenSDKSettings, SDKSettings, get_sdk_config, settings
from .engine import Engine, StreamCallbacks
from .preparation import ProvisioningController
from .provisioner import AsyncProvisioner, Provisioner
from .ramalama_engine import RamalamaEngine
from .schemas import (
    DEFAULT_PRESETS,
    GenerationPreset,
    ModelDescriptor,
    ModelManifest,
    ProvisioningStage,
    ProvisioningState,
    ProvisionResult,
    SessionState,
)
from .session import SessionController
from .sources import DirectorySource, HTTPSource

__version__ = "0.1.0"
