"""Byte sources a provisioner copies model artifacts from."""

import urllib.error
import urllib.parse
import urllib.request
from http.client import HTTPException
from pathlib import Path
from typing import BinaryIO, Protocol

from pocketllm_sdk.errors import ManifestError, ProvisioningIOError
from pocketllm_sdk.logger import logger
from pocketllm_sdk.schemas import ModelManifest

MANIFEST_FILENAME = "manifest.json"
SKIP_BUFFER_SIZE = 1024 * 1024


class ArtifactSource(Protocol):
    """Where descriptors and artifact bytes come from."""

    def read_manifest(self) -> ModelManifest: ...

    def open(self, filename: str, offset: int = 0) -> BinaryIO:
        """Open `filename` for reading, positioned `offset` bytes in."""
        ...


def skip_fully(stream: BinaryIO, count: int) -> int:
    """Read and discard up to `count` bytes. Returns how many were skipped."""
    remaining = count
    while remaining > 0:
        data = stream.read(min(remaining, SKIP_BUFFER_SIZE))
        if not data:
            break
        remaining -= len(data)
    return count - remaining


class DirectorySource:
    """A local bundle directory holding `manifest.json` and the artifact files."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def read_manifest(self) -> ModelManifest:
        path = self.root / MANIFEST_FILENAME
        try:
            data = path.read_bytes()
        except FileNotFoundError as exc:
            raise ManifestError(f"Manifest not found: {path}") from exc
        except OSError as exc:
            raise ManifestError(f"Could not read manifest {path}: {exc}") from exc
        return ModelManifest.from_json(data)

    def open(self, filename: str, offset: int = 0) -> BinaryIO:
        stream = (self.root / filename).open("rb")
        if offset:
            stream.seek(offset)
        return stream


class HTTPSource:
    """A web root serving `manifest.json` and the artifact files.

    Resumes with a `Range` request. Servers that ignore the range get the
    whole body, and the already-held prefix is read and discarded.
    """

    def __init__(self, base_url: str, timeout: float = 30):
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = timeout

    def url_for(self, filename: str) -> str:
        return urllib.parse.urljoin(self.base_url, urllib.parse.quote(filename))

    def read_manifest(self) -> ModelManifest:
        url = self.url_for(MANIFEST_FILENAME)
        try:
            with urllib.request.urlopen(url, timeout=self.timeout) as response:
                body = response.read()
        except (OSError, HTTPException) as exc:
            raise ManifestError(f"Could not fetch manifest {url}: {exc}") from exc
        return ModelManifest.from_json(body)

    def open(self, filename: str, offset: int = 0) -> BinaryIO:
        url = self.url_for(filename)
        headers = {"Range": f"bytes={offset}-"} if offset else {}
        request = urllib.request.Request(url, headers=headers, method="GET")
        try:
            response = urllib.request.urlopen(request, timeout=self.timeout)
        except urllib.error.HTTPError as exc:
            if exc.code == 416:
                logger.debug(f"Server reports nothing past offset {offset} for {url}")
                return _EmptyBody()
            raise ProvisioningIOError(f"GET {url} failed with HTTP {exc.code}") from exc

        if offset and response.status != 206:
            logger.debug(f"Server ignored range request for {url}; skipping {offset} bytes")
            skipped = skip_fully(response, offset)
            if skipped < offset:
                response.close()
                raise ProvisioningIOError(f"{url} ended after {skipped} bytes, before resume offset {offset}")
        return response


class _EmptyBody:
    def read(self, size: int = -1) -> bytes:
        return b""

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False
