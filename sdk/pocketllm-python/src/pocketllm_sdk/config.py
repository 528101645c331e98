"""SDK-level configuration loaded from environment and overridable at runtime."""

from __future__ import annotations

import os
import socket
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from ramalama.config import get_config

from pocketllm_sdk.logger import logger

LOCAL_CONNECT_HOST = "127.0.0.1"
DOCKER_CONNECT_HOST = "host.docker.internal"
PODMAN_CONNECT_HOST = "host.containers.internal"

DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024
DEFAULT_PROGRESS_INTERVAL = 512 * 1024
DEFAULT_MAX_THREADS = 4
DEFAULT_IMAGE = "quay.io/ramalama/ramalama:0.16.0"


def is_running_in_container() -> bool:
    """Detect whether the current Python process is running in a container."""
    return bool(os.environ.get("container") or os.path.exists("/.dockerenv") or os.path.exists("/run/.containerenv"))


@lru_cache(maxsize=1)
def resolve_engine() -> str | None:
    """Resolve the active container engine from SDK env or Ramalama config."""
    if (from_env := os.environ.get("POCKETLLM_ENGINE")) is not None:
        return os.path.basename(from_env)
    return get_config().engine


def default_store_root() -> Path:
    """Artifacts live next to the ramalama model store unless overridden."""
    return Path(get_config().store) / "pocketllm"


def host_resolves(host: str) -> bool:
    """Return whether a hostname can be resolved in the current environment."""
    try:
        socket.getaddrinfo(host, None)
        return True
    except OSError:
        return False


def default_connect_host() -> str:
    """Compute the default connect host for host or containerized SDK clients."""
    if not is_running_in_container():
        return LOCAL_CONNECT_HOST

    logger.warning("Detected SDK is running inside of a container.")
    match resolve_engine():
        case "docker":
            return DOCKER_CONNECT_HOST
        case "podman":
            return PODMAN_CONNECT_HOST
        case _:
            for host in [DOCKER_CONNECT_HOST, PODMAN_CONNECT_HOST]:
                if host_resolves(host):
                    return host

            logger.warning(f"Could not resolve a connection host. Defaulting to {LOCAL_CONNECT_HOST}")
            return LOCAL_CONNECT_HOST


class BasePocketSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="POCKETLLM_", extra="ignore")


class ProvisioningSettings(BasePocketSettings):
    store_root: Path = Field(default_factory=default_store_root)
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, gt=0)
    progress_interval: int = Field(default=DEFAULT_PROGRESS_INTERVAL, gt=0)


class SessionSettings(BasePocketSettings):
    max_threads: int = Field(default=DEFAULT_MAX_THREADS, gt=0)
    buffer_size: int = Field(default=64, gt=0)
    handoff_timeout: float = Field(default=5.0, gt=0)


class ConnectionSettings(BasePocketSettings):
    bind_host: str = "127.0.0.1"
    connect_host: str = Field(default_factory=default_connect_host)

    @field_validator("connect_host", mode="after")
    @classmethod
    def populate_connect_host(cls, host: str) -> Any:
        if not host_resolves(host):
            logger.warning(f"Could not resolve connect_host: {host}")
        return host


class ContainerSettings(BasePocketSettings):
    engine: str | None = Field(default_factory=resolve_engine)
    image: str = DEFAULT_IMAGE
    timeout: float = Field(default=30, gt=0)


class SDKSettings(BaseModel):
    """Global SDK settings for provisioning, sessions and the bundled engine."""

    provisioning: ProvisioningSettings = Field(default_factory=ProvisioningSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    container: ContainerSettings = Field(default_factory=ContainerSettings)

    def get_locked(self) -> FrozenSDKSettings:
        payload = self.model_dump()
        return FrozenSDKSettings.model_validate(payload)


class FrozenSDKSettings(SDKSettings):
    model_config = ConfigDict(frozen=True)


settings = SDKSettings()


def get_sdk_config() -> FrozenSDKSettings:
    """Return an immutable snapshot of current global SDK settings."""
    return settings.get_locked()


def default_thread_count() -> int:
    """Engine threads: every core, capped at the configured maximum."""
    return max(1, min(os.cpu_count() or 1, get_sdk_config().session.max_threads))
