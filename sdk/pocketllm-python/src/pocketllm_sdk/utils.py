import json
import socket
import urllib.error
import urllib.request
from collections.abc import Iterable, Iterator
from contextlib import closing
from dataclasses import dataclass
from threading import Lock

from pocketllm_sdk.schemas import ChatMessage

LOCAL_PORT_RESERVATION_HOST = "127.0.0.1"


def human_bytes(count: int) -> str:
    """Format a byte count with a binary unit, e.g. `1.50 MB`."""
    for unit, size in (("GB", 1024**3), ("MB", 1024**2), ("KB", 1024)):
        if count >= size:
            return f"{count / size:.2f} {unit}"
    return f"{count} B"


def pick_free_tcp_port(host: str = "127.0.0.1") -> int:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


class PortReservationSystem:
    def __init__(self):
        self.lock: Lock = Lock()
        self.reserved_ports: dict[str, set[int]] = dict()

    def reserve_port(self, host: str = "127.0.0.1") -> int:
        """Reserve a serving port for this process to avoid concurrent collisions."""
        with self.lock:
            reserved = self.reserved_ports.setdefault(host, set())
            while (port := pick_free_tcp_port(host)) in reserved:
                pass
            reserved.add(port)
            return port

    def release_port(self, port: int | str, host: str = "127.0.0.1") -> None:
        with self.lock:
            if (port_set := self.reserved_ports.get(host)) is not None:
                port_set.discard(int(port))


port_reserver = PortReservationSystem()


@dataclass
class ServerAttributes:
    """Track connection endpoints and readiness for a running model server."""

    host: str
    scheme: str = "http"
    health_path: str = "/health"
    chat_path: str = "/v1/chat/completions"
    port: int | None = None
    ready: bool = False

    def open(self):
        if self.port is not None:
            return
        self.port = port_reserver.reserve_port(LOCAL_PORT_RESERVATION_HOST)

    def close(self):
        self.ready = False
        if self.port is None:
            return
        port_reserver.release_port(self.port, LOCAL_PORT_RESERVATION_HOST)
        self.port = None

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    @property
    def health_url(self) -> str:
        return f"{self.url}/{self.health_path.lstrip('/')}"

    @property
    def chat_url(self) -> str:
        return f"{self.url}/{self.chat_path.lstrip('/')}"

    def is_healthy(self, timeout: float = 1) -> bool:
        """Check whether the configured health endpoint is responding.

        Returns:
            True when the endpoint returns HTTP 200 or 404.
        """
        request = urllib.request.Request(self.health_url, method="GET")
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                return response.status in (200, 404)
        except urllib.error.HTTPError as exc:
            return exc.code == 404


def build_chat_request(
    url: str,
    model_alias: str,
    prompt: str,
    max_tokens: int,
    temperature: float,
    top_p: float,
    stream: bool,
) -> urllib.request.Request:
    """Build an OpenAI-compatible chat completion request for a single prompt."""
    messages: list[ChatMessage] = [{"role": "user", "content": prompt}]
    data = {
        "model": model_alias,
        "messages": messages,
        "stream": stream,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "top_p": top_p,
    }
    return urllib.request.Request(
        url,
        data=json.dumps(data).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )


def iter_sse_data(lines: Iterable[bytes]) -> Iterator[str]:
    """Yield the payload of each `data:` line of a server-sent event stream."""
    for raw in lines:
        line = raw.decode("utf-8").strip()
        if line.startswith("data:"):
            yield line[len("data:") :].strip()


def delta_text(chunk: dict) -> str:
    """Extract the streamed text from one chat completion chunk."""
    choices = chunk.get("choices") or []
    if not choices:
        return ""
    return (choices[0].get("delta") or {}).get("content") or ""
