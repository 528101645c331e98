import string
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Literal, TypedDict

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from pocketllm_sdk.errors import EngineError, ManifestError, ProvisioningError


class ChatMessage(TypedDict):
    """Chat completion message payload.

    Attributes:
        role: Message author role.
        content: Message text content.
    """

    role: Literal["system", "user", "assistant", "developer"]
    content: str


class ModelDescriptor(BaseModel):
    """Metadata identifying one model artifact and its expected checksum.

    Field names follow the manifest keys, so a manifest entry validates
    directly into a descriptor.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    filename: str = Field(min_length=1)
    version: str = Field(min_length=1)
    size_bytes: int = Field(ge=0)
    sha256: str
    quant: str | None = None
    n_ctx_hint: int | None = Field(default=None, gt=0)

    @field_validator("sha256", mode="after")
    @classmethod
    def normalize_digest(cls, digest: str) -> str:
        digest = digest.strip().lower()
        if not digest or any(c not in string.hexdigits for c in digest):
            raise ValueError("sha256 must be a hex digest")
        return digest

    @field_validator("filename", "name", "version", mode="after")
    @classmethod
    def reject_path_components(cls, value: str) -> str:
        if value in (".", "..") or "/" in value or "\\" in value:
            raise ValueError(f"{value!r} must be a bare path component")
        return value

    @property
    def identity(self) -> tuple[str, str]:
        return self.name, self.version

    @property
    def checksum(self) -> str:
        return self.sha256


class ModelManifest(BaseModel):
    """The `{models: [...]}` document published by a descriptor source."""

    models: list[ModelDescriptor] = Field(default_factory=list)

    @classmethod
    def from_json(cls, text: str | bytes) -> "ModelManifest":
        try:
            return cls.model_validate_json(text)
        except (ValidationError, UnicodeDecodeError) as exc:
            raise ManifestError(f"Invalid manifest: {exc}") from exc

    def first(self) -> ModelDescriptor:
        if not self.models:
            raise ManifestError("Manifest lists no models")
        return self.models[0]

    def find(self, name: str, version: str | None = None) -> ModelDescriptor:
        for descriptor in self.models:
            if descriptor.name == name and (version is None or descriptor.version == version):
                return descriptor
        wanted = name if version is None else f"{name}@{version}"
        raise ManifestError(f"Manifest has no model named {wanted}")


class ArtifactStatus(BaseModel):
    """Sidecar written next to a committed artifact."""

    ready: bool
    sha256: str
    version: str
    size: int


@dataclass(frozen=True)
class ProvisionResult:
    """Outcome of one `ensure_ready` call.

    Failures and cancellation are values, not exceptions: `error` is set on
    failure, `cancelled` on a user-initiated stop, and neither on success.
    """

    ready: bool
    path: Path | None = None
    context_hint: int | None = None
    reason: str | None = None
    cancelled: bool = False
    error: ProvisioningError | None = None


class ProvisioningStage(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    COPYING = "copying"
    DONE = "done"
    CANCELLED = "cancelled"
    ERROR = "error"


class ProvisioningState(BaseModel):
    """Immutable snapshot of a provisioning run, as seen by presenters."""

    model_config = ConfigDict(frozen=True)

    stage: ProvisioningStage = ProvisioningStage.IDLE
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    bytes_copied: int = 0
    total_bytes: int = 0
    message: str | None = None
    model_path: Path | None = None
    context_hint: int | None = None

    @property
    def done(self) -> bool:
        return self.stage is ProvisioningStage.DONE

    @property
    def running(self) -> bool:
        return self.stage in (ProvisioningStage.PREPARING, ProvisioningStage.COPYING)


class GenerationPreset(BaseModel):
    """A named bundle of generation parameters."""

    model_config = ConfigDict(frozen=True)

    name: str
    temperature: float = Field(ge=0)
    top_p: float = Field(gt=0, le=1)
    max_tokens: int = Field(gt=0)
    context_length: int = Field(gt=0)


DEFAULT_PRESETS: tuple[GenerationPreset, ...] = (
    GenerationPreset(name="Fast", temperature=0.1, top_p=0.9, max_tokens=128, context_length=1024),
    GenerationPreset(name="Balanced", temperature=0.7, top_p=0.95, max_tokens=256, context_length=2048),
    GenerationPreset(name="Creative", temperature=0.95, top_p=0.98, max_tokens=512, context_length=3072),
)


class Author(str, Enum):
    USER = "user"
    BOT = "bot"


class MessageMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    first_token_latency_ms: float | None = None
    tokens_per_second: float | None = None


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    author: Author
    text: str
    created_at: datetime
    metrics: MessageMetrics | None = None


class SessionPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    GENERATING = "generating"
    FAILED = "failed"


class SessionState(BaseModel):
    """Immutable snapshot of a chat session, as seen by presenters."""

    model_config = ConfigDict(frozen=True)

    phase: SessionPhase = SessionPhase.UNINITIALIZED
    messages: tuple[Message, ...] = ()
    pending_input: str = ""
    presets: tuple[GenerationPreset, ...] = ()
    active_preset: GenerationPreset | None = None
    status_message: str | None = None

    @property
    def is_model_ready(self) -> bool:
        return self.phase in (SessionPhase.READY, SessionPhase.GENERATING)

    @property
    def is_generating(self) -> bool:
        return self.phase is SessionPhase.GENERATING


@dataclass(frozen=True)
class TokenEvent:
    text: str


@dataclass(frozen=True)
class CompletedEvent:
    pass


@dataclass(frozen=True)
class ErrorEvent:
    reason: str
    cause: EngineError | None = None


StreamEvent = TokenEvent | CompletedEvent | ErrorEvent


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, (CompletedEvent, ErrorEvent))
