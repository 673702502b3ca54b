"""
=============================================================================
CLIENT CONNECTION
=============================================================================

Wraps one accepted client socket: buffered reading of exactly one request,
writing the response, and a clean TCP close.

=============================================================================
A REQUEST ARRIVES IN PIECES
=============================================================================

TCP delivers a byte stream, not messages. One request can show up as any
number of recv() results:

    Client writes:   "GET / HTTP/1.1\r\nHost: x\r\n\r\n"

    Server reads:    recv() → "GET / HT"
                     recv() → "TP/1.1\r\nHo"
                     recv() → "st: x\r\n\r\n"

So the connection keeps a buffer and grows it until it holds a complete
head (terminated by \r\n\r\n), then reads exactly Content-Length more bytes.

=============================================================================
ONE DEADLINE PER REQUEST
=============================================================================

A per-recv() timeout lets a client that trickles one byte every few seconds
hold a thread forever. read_request() instead fixes a single deadline when
it starts and gives every recv() only the time that is left:

    t=0        deadline = now + read_timeout
    recv()     timeout = deadline - now
    recv()     timeout = deadline - now     (smaller)
    ...
    now >= deadline → TimeoutError          (server answers 408)

=============================================================================
CONNECTION STATE MACHINE
=============================================================================

    IDLE ──► READING ──► PARSED ──► DISPATCHED ──► RESPONDING ──► CLOSED
     │          │                                      ▲
     │          └──── parse error / timeout ───────────┤
     └─────────────── connection cap reached ──────────┘

    Any state may go to CLOSED (client vanished, close() called).
    Anything else raises RuntimeError.

=============================================================================
"""

import logging
import socket
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from ..http.request import HTTPParseError, Request, RequestParser
from ..http.status_codes import HTTPStatus


logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Where a connection is in its single request/response cycle."""
    IDLE = "idle"                # Accepted, nothing read yet
    READING = "reading"          # Accumulating request bytes
    PARSED = "parsed"            # Request fully read and parsed
    DISPATCHED = "dispatched"    # Handed to the router / handler
    RESPONDING = "responding"    # Writing the response
    CLOSED = "closed"            # Socket released


_TRANSITIONS = {
    ConnectionState.IDLE: {ConnectionState.READING, ConnectionState.RESPONDING},
    ConnectionState.READING: {ConnectionState.PARSED, ConnectionState.RESPONDING},
    ConnectionState.PARSED: {ConnectionState.DISPATCHED},
    ConnectionState.DISPATCHED: {ConnectionState.RESPONDING},
    ConnectionState.RESPONDING: set(),
    ConnectionState.CLOSED: set(),
}


@dataclass
class Connection:
    """
    One client connection, serving exactly one request.

    Attributes:
        socket: The accepted client socket.
        address: Client's (ip, port) tuple.
        id: Short identifier used in log lines.
        state: Current ConnectionState.
        created_at: time.monotonic() at accept.
        buffer_size: Bytes requested per recv().
        read_timeout: Seconds allowed to receive the whole request.
    """

    socket: socket.socket
    address: Tuple[str, int]

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    state: ConnectionState = ConnectionState.IDLE
    created_at: float = field(default_factory=time.monotonic)

    buffer_size: int = 8192
    read_timeout: float = 30.0

    _buffer: bytes = field(default=b"", repr=False)

    # Upper bound on how long close() waits for the client's FIN
    DRAIN_TIMEOUT = 0.5

    @property
    def client_ip(self) -> str:
        return self.address[0] if self.address else ""

    @property
    def age(self) -> float:
        """Seconds since the connection was accepted."""
        return time.monotonic() - self.created_at

    # =========================================================================
    # STATE
    # =========================================================================

    def transition(self, new_state: ConnectionState) -> None:
        """
        Move to new_state.

        Raises:
            RuntimeError: If the move is not allowed from the current state.
        """
        if new_state is ConnectionState.CLOSED:
            self.state = new_state
            return
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"[{self.id}] Illegal connection state transition: "
                f"{self.state.name} -> {new_state.name}"
            )
        self.state = new_state

    # =========================================================================
    # READING
    # =========================================================================

    def read_request(self, parser: RequestParser) -> Optional[Request]:
        """
        Read and parse exactly one request.

        ┌─────────────────────────────────────────────────────────────────┐
        │                    read_request() Flow                           │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │   deadline = now + read_timeout                                  │
        │        │                                                         │
        │   while no \r\n\r\n in buffer:      ← head, capped at            │
        │       recv() → buffer                 max_header_size (431)      │
        │        │                                                         │
        │   parser.parse_head()               ← request line + headers     │
        │   parser.body_length()              ← Content-Length (413/501)   │
        │        │                                                         │
        │   while body incomplete:                                         │
        │       recv() → buffer                                            │
        │        │                                                         │
        │   parser.build() → Request                                       │
        │                                                                  │
        └─────────────────────────────────────────────────────────────────┘

        Args:
            parser: Parser carrying the size limits.

        Returns:
            The parsed Request, or None if the client closed the connection
            without sending a single byte.

        Raises:
            HTTPParseError: Malformed request, or the client closed the
                connection part-way through one.
            TimeoutError: The whole request did not arrive within
                read_timeout seconds.
        """
        self.transition(ConnectionState.READING)
        deadline = time.monotonic() + self.read_timeout

        # ─────────────────────────────────────────────────────────────────
        # STEP 1: Accumulate the head
        # ─────────────────────────────────────────────────────────────────
        header_end = self._buffer.find(b"\r\n\r\n")
        while header_end == -1:
            if len(self._buffer) > parser.max_header_size:
                raise HTTPParseError(
                    "Request header block too large",
                    status_code=HTTPStatus.REQUEST_HEADER_FIELDS_TOO_LARGE,
                )

            chunk = self._recv(deadline)
            if not chunk:
                if not self._buffer:
                    return None
                raise HTTPParseError("Client closed connection before end of headers")

            # Search only the new bytes plus the 3 that could start a split CRLFCRLF
            start = max(0, len(self._buffer) - 3)
            self._buffer += chunk
            header_end = self._buffer.find(b"\r\n\r\n", start)

        head = parser.parse_head(self._buffer[:header_end])
        length = parser.body_length(head)

        # ─────────────────────────────────────────────────────────────────
        # STEP 2: Read exactly Content-Length body bytes
        # ─────────────────────────────────────────────────────────────────
        body_start = header_end + 4
        while len(self._buffer) - body_start < length:
            chunk = self._recv(deadline)
            if not chunk:
                received = len(self._buffer) - body_start
                raise HTTPParseError(
                    f"Client closed connection mid-body: got {received} of {length} bytes"
                )
            self._buffer += chunk

        body_end = body_start + length
        body = self._buffer[body_start:body_end]
        # No pipelining: anything past this request is discarded on close
        self._buffer = self._buffer[body_end:]

        request = parser.build(head, body, self.address)
        self.transition(ConnectionState.PARSED)
        return request

    def _recv(self, deadline: float) -> bytes:
        """
        One recv() bounded by what is left of the deadline.

        Returns b"" when the peer closed or reset the connection.

        Raises:
            TimeoutError: The deadline has passed.
        """
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("Request read timeout")
        self.socket.settimeout(remaining)
        try:
            return self.socket.recv(self.buffer_size)
        except socket.timeout:
            raise TimeoutError("Request read timeout")
        except (ConnectionResetError, BrokenPipeError):
            return b""

    # =========================================================================
    # WRITING
    # =========================================================================

    def send_response(self, data: bytes) -> bool:
        """
        Write the serialized response.

        Uses sendall(); a partial write is never reported as success.

        Returns:
            True if every byte was handed to the kernel, False if the
            client went away first.
        """
        if self.state is not ConnectionState.RESPONDING:
            self.transition(ConnectionState.RESPONDING)

        try:
            self.socket.settimeout(self.read_timeout)
            self.socket.sendall(data)
            return True
        except OSError as e:
            logger.warning(f"[{self.id}] Send to {self.client_ip} failed: {e}")
            return False

    # =========================================================================
    # CLOSING
    # =========================================================================

    def close(self, drain_timeout: Optional[float] = None) -> None:
        """
        Close the connection. Idempotent.

        Sends FIN with shutdown(SHUT_WR), drains whatever the client still
        has in flight for a short moment, then releases the descriptor.
        Draining keeps the kernel from answering unread input with RST,
        which could destroy the response before the client reads it.

        Args:
            drain_timeout: Seconds to wait for the client's FIN. Defaults
                to DRAIN_TIMEOUT. 0 only reads what has already arrived.
        """
        if self.state is ConnectionState.CLOSED:
            return

        try:
            self.socket.shutdown(socket.SHUT_WR)
        except OSError:
            pass  # Peer already gone

        if drain_timeout is None:
            drain_timeout = self.DRAIN_TIMEOUT
        drain_until = time.monotonic() + drain_timeout
        try:
            while True:
                # A timeout of 0 makes recv() non-blocking: it returns what
                # is buffered or raises BlockingIOError
                self.socket.settimeout(max(0.0, drain_until - time.monotonic()))
                if not self.socket.recv(self.buffer_size):
                    break
                if time.monotonic() >= drain_until:
                    break
        except OSError:
            pass

        try:
            self.socket.close()
        except OSError:
            pass

        self.transition(ConnectionState.CLOSED)
        logger.debug(f"[{self.id}] Connection from {self.client_ip} closed after {self.age:.3f}s")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
