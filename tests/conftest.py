"""
pytest configuration and fixtures.
"""

import socket
import sys
import threading
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional, Tuple

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from embedhttp import App, ServerConfig


@pytest.fixture
def sample_get_request() -> bytes:
    """Sample HTTP GET request."""
    return (
        b"GET /api/users?page=1&limit=10 HTTP/1.1\r\n"
        b"Host: localhost:8080\r\n"
        b"User-Agent: pytest\r\n"
        b"Accept: application/json\r\n"
        b"\r\n"
    )


@pytest.fixture
def sample_post_request() -> bytes:
    """Sample HTTP POST request with JSON body."""
    body = b'{"name": "John", "email": "john@example.com"}'
    return (
        b"POST /api/users HTTP/1.1\r\n"
        b"Host: localhost:8080\r\n"
        b"Content-Type: application/json\r\n"
        + f"Content-Length: {len(body)}\r\n".encode()
        + b"\r\n"
    ) + body


def make_config(**overrides) -> ServerConfig:
    """Server configuration tuned for tests: loopback, OS-picked port, fast polling."""
    values = dict(
        host="127.0.0.1",
        port=0,
        read_timeout=2.0,
        accept_poll_interval=0.05,
        shutdown_timeout=2.0,
        handle_signals=False,
        log_level="WARNING",
    )
    values.update(overrides)
    return ServerConfig(**values)


@pytest.fixture
def config() -> ServerConfig:
    """Default test server configuration."""
    return make_config()


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


# =============================================================================
# RAW HTTP CLIENT HELPERS
# =============================================================================

def recv_all(sock: socket.socket) -> bytes:
    """Read until the server closes the connection."""
    chunks = []
    while True:
        chunk = sock.recv(65536)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


def parse_response(raw: bytes) -> Tuple[int, Dict[str, str], bytes]:
    """Split a raw response into (status, lowercased headers, body)."""
    head, _, body = raw.partition(b"\r\n\r\n")
    lines = head.decode("iso-8859-1").split("\r\n")
    status = int(lines[0].split(" ")[1])
    headers = {}
    for line in lines[1:]:
        name, _, value = line.partition(":")
        headers[name.strip().lower()] = value.strip()
    return status, headers, body


class ServerThread:
    """Runs App.run() on a background thread."""

    def __init__(self, app: App, port: int = 0):
        self.app = app
        self.requested_port = port
        self.host = "127.0.0.1"
        self.port: Optional[int] = None
        self.error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "ServerThread":
        """Start the server and wait until it accepts connections."""
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

        if not self.app.wait_until_ready(timeout=5.0):
            raise RuntimeError(f"Server failed to start: {self.error!r}")
        self.port = self.app.address[1]
        return self

    def _run(self):
        try:
            self.app.run(port=self.requested_port)
        except BaseException as e:
            self.error = e

    def stop(self):
        """Stop the server."""
        self.app.shutdown()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)

    @property
    def stopped(self) -> bool:
        return self._thread is not None and not self._thread.is_alive()

    def connect(self, timeout: float = 5.0) -> socket.socket:
        return socket.create_connection((self.host, self.port), timeout=timeout)

    def request(self, data: bytes, timeout: float = 5.0) -> bytes:
        """Send raw bytes, return the raw response."""
        with self.connect(timeout) as sock:
            sock.sendall(data)
            return recv_all(sock)

    def get(self, path: str) -> Tuple[int, Dict[str, str], bytes]:
        raw = self.request(f"GET {path} HTTP/1.1\r\nHost: test\r\n\r\n".encode())
        return parse_response(raw)


@pytest.fixture
def serve() -> Generator[Callable[[App], ServerThread], None, None]:
    """Start apps in background threads; all are stopped after the test."""
    started: List[ServerThread] = []

    def _serve(app: App) -> ServerThread:
        server = ServerThread(app).start()
        started.append(server)
        return server

    yield _serve

    for server in started:
        server.stop()


@pytest.fixture
def hello_app() -> App:
    """App with the canonical hello-world route plus a few test routes."""
    app = App(make_config())

    @app.get("/")
    def index(request, response):
        response.json([("message", "Hello world")])

    @app.post("/echo")
    def echo(request, response):
        response.json([("received", request.json)])

    @app.get("/boom")
    def boom(request, response):
        raise RuntimeError("handler exploded")

    return app
