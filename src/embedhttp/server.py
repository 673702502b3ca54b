"""
=============================================================================
EMBEDDABLE HTTP APPLICATION
=============================================================================

App is the one object an embedding program touches: register handlers,
then call run().

    from embedhttp import App

    app = App()

    @app.get("/")
    def index(request, response):
        response.json([("message", "Hello world")])

    app.run(8080)    # blocks

=============================================================================
REQUEST FLOW
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                          REQUEST FLOW                               │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   Listener (accept loop thread)                                      │
    │        │ accept()                                                    │
    │        ▼                                                             │
    │   ConnectionWorkers.submit(conn)  ── cap reached ──► 503, close      │
    │        │ new thread                                                  │
    │        ▼                                                             │
    │   conn.read_request(parser)       ── HTTPParseError ──► 4xx/501      │
    │        │                          ── TimeoutError ────► 408          │
    │        ▼                          ── client gone ─────► close        │
    │   App.dispatch(request)                                              │
    │        │  router.match()          ── NOT_FOUND ───────► 404          │
    │        │  handler(req, resp)      ── exception ───────► 500          │
    │        ▼                                                             │
    │   add Connection/Server/Date, serialize, sendall(), close            │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

One request per connection. Every response carries "Connection: close"
and the socket is closed after writing it.

Nothing that goes wrong inside one connection reaches the accept loop:
every failure ends as an error response on that connection, or a log line.

=============================================================================
"""

import logging
import threading
import time
from datetime import datetime, timezone
from functools import partial
from typing import Optional, Tuple

from .config import ServerConfig
from .core.connection import Connection, ConnectionState
from .core.listener import Listener
from .core.workers import ConnectionWorkers
from .http.request import HTTPParseError, Request, RequestParser
from .http.response import (
    Response,
    error_response,
    format_http_date,
    internal_error,
    not_found,
    request_timeout,
    service_unavailable,
)
from .http.router import NOT_FOUND, Router


logger = logging.getLogger(__name__)
access_logger = logging.getLogger("embedhttp.access")


class App:
    """
    HTTP application: a router plus the server that feeds it.

    =========================================================================
    LIFECYCLE
    =========================================================================

        App()                  routes may be registered
          │
          ▼
        run(port)              validate config → bind (BindError) →
          │                    freeze routes → accept loop (BLOCKS)
          ▼
        shutdown()             from a handler, another thread,
          │                    or SIGINT/SIGTERM
          ▼
        run() returns          in-flight connections joined

    Routes are frozen by the first run(); registering afterwards raises
    RouterFrozenError.

    =========================================================================
    """

    def __init__(self, config: Optional[ServerConfig] = None):
        """
        Args:
            config: Server configuration. Defaults to ServerConfig().
        """
        self.config = config or ServerConfig()
        self.router = Router()

        self._lock = threading.Lock()
        self._listener: Optional[Listener] = None
        self._started = threading.Event()
        self._stop_requested = threading.Event()

    # =========================================================================
    # ROUTE REGISTRATION
    # =========================================================================
    #
    # Each helper works both ways:
    #
    #     app.get("/", index)
    #
    #     @app.get("/")
    #     def index(request, response): ...
    #
    # =========================================================================

    def route(self, path: str, method: str = "GET", handler=None):
        """Register a handler for any method."""
        return self.router.route(path, method, handler)

    def get(self, path: str, handler=None):
        return self.router.get(path, handler)

    def post(self, path: str, handler=None):
        return self.router.post(path, handler)

    def put(self, path: str, handler=None):
        return self.router.put(path, handler)

    def delete(self, path: str, handler=None):
        return self.router.delete(path, handler)

    def patch(self, path: str, handler=None):
        return self.router.patch(path, handler)

    def head(self, path: str, handler=None):
        return self.router.head(path, handler)

    def options(self, path: str, handler=None):
        return self.router.options(path, handler)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def run(self, port: Optional[int] = None, host: Optional[str] = None) -> None:
        """
        Bind, listen and serve until shutdown(). Blocks.

        Args:
            port: Overrides config.port. 0 picks a free port.
            host: Overrides config.host.

        Raises:
            BindError: The port could not be bound. Raised immediately,
                before any connection is accepted.
            ValueError: The effective configuration is invalid.
        """
        config = self.config.with_overrides(port=port, host=host)
        config.validate()
        self._setup_logging(config)

        parser = RequestParser(
            max_header_size=config.max_header_size,
            max_body_size=config.max_body_size,
        )
        listener = Listener(config)
        host_bound, port_bound = listener.bind()

        self.router.freeze()

        workers = ConnectionWorkers(
            handler=partial(self._process_connection, parser=parser, config=config),
            reject=partial(self._reject_connection, config=config),
            max_connections=config.max_connections,
        )

        with self._lock:
            self._listener = listener
            if self._stop_requested.is_set():
                listener.shutdown()
            self._started.set()

        logger.info(f"Starting {config.server_name} on http://{host_bound}:{port_bound}")
        self.router.log_routes()

        try:
            listener.serve(workers.submit)
        finally:
            workers.shutdown(timeout=config.shutdown_timeout)
            with self._lock:
                self._listener = None
                self._started.clear()
                self._stop_requested.clear()
            logger.info("Server stopped")

    def shutdown(self) -> None:
        """
        Stop a running server. Safe from any thread and from handlers.

        The accept loop exits within config.accept_poll_interval; run() then
        waits up to config.shutdown_timeout for in-flight connections and
        returns. Calling shutdown() before run() has bound makes that run()
        return right after binding.
        """
        with self._lock:
            self._stop_requested.set()
            if self._listener is not None:
                self._listener.shutdown()

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Block until run() is accepting connections.

        Returns:
            False if the timeout expired first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        if not self._started.wait(timeout):
            return False
        listener = self._listener
        if listener is None:
            return False
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        return listener.wait_until_ready(remaining)

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Bound (host, port) while running, else None."""
        listener = self._listener
        return listener.address if listener is not None else None

    @property
    def is_running(self) -> bool:
        listener = self._listener
        return listener is not None and listener.is_running

    def _setup_logging(self, config: ServerConfig) -> None:
        """
        Configure logging based on config.

        basicConfig() is a no-op when the embedding program already set up
        the root logger, so an application's own logging setup wins.
        """
        level = getattr(logging, config.log_level.upper(), logging.INFO)
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        logging.getLogger("embedhttp").setLevel(level)

    # =========================================================================
    # DISPATCH
    # =========================================================================

    def dispatch(self, request: Request) -> Response:
        """
        Route a request and run its handler.

        Never raises. The returned Response is one of:
            - what the handler left on a fresh Response
            - 404 {"error":"Not Found"} when no route matches
            - the parse error's status when the handler let an
              HTTPParseError escape (e.g. from request.json)
            - 500 {"error":"Internal Server Error"} for any other exception
        """
        handler = self.router.match(request.method, request.path)
        if handler is NOT_FOUND:
            return not_found()

        response = Response()
        try:
            handler(request, response)
        except HTTPParseError as e:
            logger.warning(f"Bad request body for {request.method} {request.path}: {e}")
            return error_response(e.status_code)
        except Exception:
            logger.exception(f"Handler error for {request.method} {request.path}")
            return internal_error()
        return response

    # =========================================================================
    # CONNECTION HANDLING (worker threads)
    # =========================================================================

    def _process_connection(
        self,
        conn: Connection,
        parser: RequestParser,
        config: ServerConfig,
    ) -> None:
        """
        Serve exactly one request on conn, then close it.

        Runs on a worker thread.
        """
        started = time.perf_counter()
        with conn:
            request = None
            try:
                request = conn.read_request(parser)
            except HTTPParseError as e:
                logger.warning(f"[{conn.id}] Bad request from {conn.client_ip}: {e}")
                response = error_response(e.status_code)
            except TimeoutError:
                logger.warning(
                    f"[{conn.id}] Request from {conn.client_ip} not received "
                    f"within {config.read_timeout}s"
                )
                response = request_timeout()
            else:
                if request is None:
                    logger.debug(f"[{conn.id}] Client closed without sending a request")
                    return
                conn.transition(ConnectionState.DISPATCHED)
                response = self.dispatch(request)

            response = self._send(conn, response, config)
            self._log_access(conn, request, response, started)

    def _reject_connection(self, conn: Connection, config: ServerConfig) -> None:
        """Answer 503 and close. Runs on a reject thread, never on the accept loop."""
        with conn:
            conn.transition(ConnectionState.RESPONDING)
            # Bound how long a client that never reads can hold this thread
            conn.read_timeout = min(conn.read_timeout, 1.0)
            self._send(conn, service_unavailable(), config)

    def _send(self, conn: Connection, response: Response, config: ServerConfig) -> Response:
        """
        Add the server headers, serialize and write.

        Returns the response actually written, which is a 500 when the
        given one could not be serialized.
        """
        self._finalize(response, config)
        try:
            data = response.to_bytes()
        except (TypeError, ValueError):
            # Bad status or header injection in what the handler built
            logger.exception(f"[{conn.id}] Handler produced an invalid response")
            response = self._finalize(internal_error(), config)
            data = response.to_bytes()
        conn.send_response(data)
        return response

    def _finalize(self, response: Response, config: ServerConfig) -> Response:
        response.set_header("Connection", "close")
        response.set_default_header("Server", config.server_name)
        response.set_default_header("Date", format_http_date(datetime.now(timezone.utc)))
        return response

    def _log_access(
        self,
        conn: Connection,
        request: Optional[Request],
        response: Response,
        started: float,
    ) -> None:
        """
        One line per request:

            127.0.0.1 "GET /users" 200 25 1.42ms
        """
        duration_ms = (time.perf_counter() - started) * 1000
        request_line = f"{request.method} {request.target}" if request is not None else "-"
        try:
            status = int(response.status)
        except (TypeError, ValueError):
            status = 0
        level = logging.WARNING if status >= 500 else logging.INFO
        access_logger.log(
            level,
            f'{conn.client_ip} "{request_line}" {status} '
            f"{len(response.body or b'')} {duration_ms:.2f}ms",
        )


def create_app(config: Optional[ServerConfig] = None) -> App:
    """
    Create an App.

    Example:
        app = create_app(ServerConfig.from_env())

        @app.get("/")
        def index(request, response):
            response.text("Hello!")

        app.run()
    """
    return App(config)
