"""
=============================================================================
LISTENER
=============================================================================

Owns the listening TCP socket and the accept loop.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                          LISTENER                                    │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │    bind()         socket() → SO_REUSEADDR → bind() → listen()        │
    │        │          failure → BindError, raised to the caller          │
    │        ▼                                                             │
    │    serve()        accept loop (BLOCKS)                               │
    │        │                                                             │
    │        │   while running:                                            │
    │        │       accept()          timeout = accept_poll_interval      │
    │        │       Connection(...)   wrap the client socket              │
    │        │       on_connection(conn)                                   │
    │        ▼                                                             │
    │    shutdown()     sets the stop flag; loop exits within one poll     │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
BINDING
=============================================================================

SO_REUSEADDR is set so a restarted server can bind while old sockets sit in
TIME_WAIT. SO_REUSEPORT is NOT set: with it, two servers could bind the same
port and silently split traffic. A port already in use must be an error.

Binding happens exactly once. There are no retries; the BindError reaches
the program that called App.run().

=============================================================================
INTERRUPTIBLE ACCEPT
=============================================================================

accept() blocks. To be able to stop, the listening socket gets a short
timeout and the loop re-checks the stop flag each time it expires:

    while not stop_requested:
        try:
            accept()          # returns at most every accept_poll_interval
        except timeout:
            continue

=============================================================================
SIGNALS
=============================================================================

SIGINT (Ctrl+C) and SIGTERM (docker stop, systemd) trigger shutdown() when
handle_signals is set. Python only allows installing signal handlers from
the main thread, so a listener running in any other thread (tests,
embedding programs) skips this step. Previous handlers are restored when
the loop exits.

=============================================================================
"""

import errno
import logging
import signal
import socket
import threading
from typing import Callable, Dict, Optional, Tuple

from ..config import ServerConfig
from .connection import Connection


logger = logging.getLogger(__name__)


class BindError(OSError):
    """
    The listening socket could not be bound or put into listening state.

    Attributes:
        errno: The OS error number (e.g. errno.EADDRINUSE).
        host: Address that was requested.
        port: Port that was requested.
    """

    def __init__(self, host: str, port: int, cause: OSError):
        super().__init__(cause.errno, f"Cannot listen on {host}:{port}: {cause.strerror or cause}")
        self.host = host
        self.port = port

    @property
    def address_in_use(self) -> bool:
        return self.errno == errno.EADDRINUSE


class Listener:
    """
    TCP listener and accept loop.

    Usage:
        listener = Listener(config)
        listener.bind()                      # raises BindError
        listener.serve(handle_connection)    # blocks until shutdown()

    A Listener is single-use: once shutdown() has been called it stays
    stopped, even if serve() had not started yet.
    """

    def __init__(self, config: ServerConfig):
        self.config = config
        self._socket: Optional[socket.socket] = None
        self._running = False
        self._stop_requested = threading.Event()
        self._ready = threading.Event()
        self._original_handlers: Dict[int, object] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """
        The actual bound (host, port), or None before bind().

        Differs from the configured port when port 0 was requested.
        """
        if self._socket is None:
            return None
        host, port = self._socket.getsockname()[:2]
        return host, port

    # =========================================================================
    # SETUP
    # =========================================================================

    def _create_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        # Responses are written in one sendall(); don't let Nagle delay them
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.settimeout(self.config.accept_poll_interval)
        return sock

    def bind(self) -> Tuple[str, int]:
        """
        Create, bind and listen. Called once.

        Returns:
            The bound (host, port).

        Raises:
            BindError: If bind() or listen() fails.
            RuntimeError: If already bound.
        """
        if self._socket is not None:
            raise RuntimeError("Listener is already bound")

        host, port = self.config.host, self.config.port
        sock = self._create_socket()
        try:
            sock.bind((host, port))
            sock.listen(self.config.backlog)
        except OSError as e:
            sock.close()
            logger.error(f"Failed to bind to {host}:{port}: {e}")
            raise BindError(host, port, e) from e

        self._socket = sock
        return self.address

    def _setup_signals(self) -> None:
        if not self.config.handle_signals:
            return
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread; SIGINT/SIGTERM handlers not installed")
            return

        def shutdown_handler(signum, frame):
            logger.info(f"Received {signal.Signals(signum).name}, initiating shutdown...")
            self.shutdown()

        for sig in (signal.SIGTERM, signal.SIGINT):
            self._original_handlers[sig] = signal.signal(sig, shutdown_handler)

    def _restore_signals(self) -> None:
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()

    # =========================================================================
    # ACCEPT LOOP
    # =========================================================================

    def serve(self, on_connection: Callable[[Connection], None]) -> None:
        """
        Accept connections until shutdown(). Blocks.

        Each accepted socket is wrapped in a Connection and passed to
        on_connection, which must return quickly (it hands the
        connection to a worker thread).

        Raises:
            RuntimeError: If bind() was not called first.
        """
        if self._socket is None:
            raise RuntimeError("Listener.bind() must be called before serve()")

        if self._stop_requested.is_set():
            self._cleanup()
            return

        self._running = True
        self._setup_signals()

        host, port = self.address
        logger.info(f"Server listening on {host}:{port}")
        self._ready.set()

        try:
            self._accept_loop(on_connection)
        finally:
            self._cleanup()

    def _accept_loop(self, on_connection: Callable[[Connection], None]) -> None:
        while not self._stop_requested.is_set():
            try:
                client_socket, client_address = self._socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._stop_requested.is_set():
                    break
                # Per-connection failures (ECONNABORTED, EMFILE, ...) must not
                # stop the server
                logger.warning(f"Accept error: {e}")
                # EMFILE and friends repeat immediately; back off one poll
                self._stop_requested.wait(self.config.accept_poll_interval)
                continue

            logger.debug(f"Accepted connection from {client_address[0]}:{client_address[1]}")

            # Accepted sockets must not inherit the listener's poll timeout
            client_socket.settimeout(None)
            conn = Connection(
                socket=client_socket,
                address=client_address,
                buffer_size=self.config.buffer_size,
                read_timeout=self.config.read_timeout,
            )
            on_connection(conn)

    def shutdown(self) -> None:
        """Stop the accept loop. Safe to call from any thread, repeatedly."""
        if self._running:
            logger.info("Shutting down listener...")
        self._stop_requested.set()

    def _cleanup(self) -> None:
        self._running = False
        self._ready.clear()
        self._restore_signals()
        if self._socket is not None:
            try:
                self._socket.close()
            except OSError:
                pass
            self._socket = None
        logger.info("Listener stopped")

    # =========================================================================
    # WAITING
    # =========================================================================

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until the accept loop is running. False on timeout."""
        return self._ready.wait(timeout)
