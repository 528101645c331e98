"""Exception taxonomy shared by provisioning, streaming and the session controller."""


class PocketLLMError(Exception):
    """Base class for SDK errors."""


class ProvisioningError(PocketLLMError):
    """A provisioning run ended without a verified artifact."""


class ManifestError(ProvisioningError):
    """The manifest is missing, malformed or lists no models."""


class IntegrityError(ProvisioningError):
    """A file's sha256 digest does not match the descriptor."""

    def __init__(self, expected: str, actual: str):
        super().__init__(f"Checksum mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class ProvisioningIOError(ProvisioningError):
    """Reading from the source or writing to the store failed."""


class EngineError(PocketLLMError):
    """Base class for inference engine failures."""


class EngineInitError(EngineError):
    """The engine could not load the model."""


class EngineInferError(EngineError):
    """The engine failed while producing a response."""


class StreamProtocolError(EngineError):
    """The engine declined to start streaming without reporting why."""


class NoContainerManagerError(EngineError):
    """Neither docker nor podman is available to serve the model."""


class ServerTimeoutError(EngineError):
    """The model server did not become healthy in time."""
