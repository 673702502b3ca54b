"""
=============================================================================
SERVER CONFIGURATION
=============================================================================

One dataclass holding every tunable of the server.

=============================================================================
CONFIGURATION SOURCES
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    CONFIGURATION HIERARCHY                          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   Priority (highest to lowest):                                     │
    │                                                                      │
    │   1. Arguments to App.run()                                         │
    │      └── app.run(3000)                                              │
    │                                                                      │
    │   2. Values passed in code                                          │
    │      └── App(ServerConfig(read_timeout=5.0))                        │
    │                                                                      │
    │   3. Environment variables (ServerConfig.from_env())                │
    │      └── HTTP_PORT=3000 python app.py                               │
    │                                                                      │
    │   4. Default values (in this dataclass)                             │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

There are no configuration files; an embedding program that wants one reads
it itself and passes the values in.

=============================================================================
"""

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional


_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class ServerConfig:
    """
    Configuration for App and its listener.

    Development:
        ServerConfig(host="127.0.0.1", log_level="DEBUG")

    Tests:
        ServerConfig(host="127.0.0.1", port=0, handle_signals=False)
    """

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    host: str = "0.0.0.0"
    """Address to bind. "0.0.0.0" listens on every IPv4 interface."""

    port: int = 8080
    """Port to listen on. 0 asks the OS for a free port (see App.address)."""

    backlog: int = 128
    """Length of the kernel's pending-connection queue."""

    buffer_size: int = 8192
    """Bytes requested per recv() call."""

    # ─────────────────────────────────────────────────────────────────────
    # REQUEST LIMITS
    # ─────────────────────────────────────────────────────────────────────

    read_timeout: float = 30.0
    """
    Seconds a client has to deliver its whole request.
    This is one deadline for the request, not a per-recv() timeout.
    Exceeding it gets a 408 response.
    """

    max_header_size: int = 64 * 1024
    """Largest request line + header block in bytes (431 above it)."""

    max_body_size: int = 1024 * 1024
    """Largest accepted Content-Length in bytes (413 above it)."""

    # ─────────────────────────────────────────────────────────────────────
    # CONCURRENCY AND LIFECYCLE
    # ─────────────────────────────────────────────────────────────────────

    max_connections: int = 256
    """
    Connections served at once. One thread serves each connection;
    past this many, new connections are answered with 503 and closed.
    """

    accept_poll_interval: float = 0.5
    """
    accept() timeout. The accept loop checks for shutdown this often,
    so it bounds how long shutdown() takes to stop the loop.
    """

    shutdown_timeout: float = 5.0
    """Seconds shutdown waits for in-flight connections to finish."""

    handle_signals: bool = True
    """
    Install SIGINT/SIGTERM handlers that call shutdown().
    Only honored when run() is called from the main thread.
    """

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING AND IDENTITY
    # ─────────────────────────────────────────────────────────────────────

    log_level: str = "INFO"
    """Level for the "embedhttp" logger (DEBUG, INFO, WARNING, ...)."""

    server_name: str = "embedhttp/1.0"
    """Value of the Server response header."""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        """
        Create configuration from environment variables.

        =====================================================================
        ENVIRONMENT VARIABLES
        =====================================================================

        HTTP_HOST             Bind address        (default: 0.0.0.0)
        HTTP_PORT             Port                (default: 8080)
        HTTP_READ_TIMEOUT     Seconds per request (default: 30)
        HTTP_MAX_BODY_SIZE    Bytes               (default: 1048576)
        HTTP_MAX_CONNECTIONS  Concurrent clients  (default: 256)
        HTTP_LOG_LEVEL        Logging level       (default: INFO)

        =====================================================================

        Args:
            environ: Mapping to read instead of os.environ.

        Raises:
            ValueError: If a numeric variable does not parse.
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            host=env.get("HTTP_HOST", defaults.host),
            port=int(env.get("HTTP_PORT", defaults.port)),
            read_timeout=float(env.get("HTTP_READ_TIMEOUT", defaults.read_timeout)),
            max_body_size=int(env.get("HTTP_MAX_BODY_SIZE", defaults.max_body_size)),
            max_connections=int(env.get("HTTP_MAX_CONNECTIONS", defaults.max_connections)),
            log_level=env.get("HTTP_LOG_LEVEL", defaults.log_level).upper(),
        )

    def with_overrides(self, **changes) -> "ServerConfig":
        """Copy with some fields replaced; None values are ignored."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def validate(self) -> None:
        """
        Validate configuration values.

        Called by App.run() before binding, so a bad value fails at
        startup instead of on the first request.

        Raises:
            ValueError: Naming the first invalid field.
        """
        if not isinstance(self.port, int) or not 0 <= self.port <= 65535:
            raise ValueError(f"Invalid port: {self.port}. Must be 0-65535.")

        if self.backlog < 1:
            raise ValueError("backlog must be >= 1")

        if self.buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")

        for name in ("read_timeout", "accept_poll_interval", "shutdown_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")

        for name in ("max_header_size", "max_body_size", "max_connections"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")

        if self.log_level.upper() not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid log_level: {self.log_level!r}. Must be one of {', '.join(_LOG_LEVELS)}."
            )
