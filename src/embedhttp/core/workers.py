"""
=============================================================================
CONNECTION WORKERS
=============================================================================

Runs each accepted connection on its own thread, up to a fixed limit.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                     CONNECTION WORKERS                               │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   accept loop ──► submit(conn)                                       │
    │                      │                                               │
    │                      ├── slot free?  ──► Thread(handle, conn)        │
    │                      │                       │                       │
    │                      │                       └── slot released       │
    │                      │                           when it returns     │
    │                      │                                               │
    │                      ├── all slots busy ──► Thread(reject, conn)     │
    │                      │                      503, then close          │
    │                      │                                               │
    │                      └── reject slots busy too ──► close at once     │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

submit() never blocks on a client. Even the 503 for an over-limit
connection is written on a short-lived thread of its own, because writing
and closing waits on the client (see Connection.close()).

Why a thread per connection instead of a queue in front of a fixed pool:
a request sitting in a queue has no thread reading it, so its read deadline
cannot run and a stalled client ahead of it delays everyone behind it. With
a thread each, a slow client only ever occupies its own thread, and the
connection cap keeps the thread count bounded.

=============================================================================
"""

import logging
import threading
import time
from typing import Callable, Optional, Set

from .connection import Connection


logger = logging.getLogger(__name__)


class ConnectionWorkers:
    """
    Thread-per-connection executor with a concurrency cap.

    Usage:
        workers = ConnectionWorkers(handle, reject, max_connections=256)
        listener.serve(workers.submit)
        ...
        workers.shutdown(timeout=5.0)

    Args:
        handler: Called on a worker thread with each accepted Connection.
            It owns the connection and must close it.
        reject: Called on a short-lived thread of its own when the cap is
            reached. It answers with a canned 503 and closes the connection.
            At most MAX_REJECTING rejections run at once; past that a
            connection is closed without any response.
        max_connections: Connections handled at the same time.
    """

    # Reject threads live about a second (one small write, then close)
    MAX_REJECTING = 64

    def __init__(
        self,
        handler: Callable[[Connection], None],
        reject: Callable[[Connection], None],
        max_connections: int = 256,
    ):
        if max_connections < 1:
            raise ValueError("max_connections must be >= 1")
        self._handler = handler
        self._reject = reject
        self.max_connections = max_connections

        self._slots = threading.BoundedSemaphore(max_connections)
        self._reject_slots = threading.BoundedSemaphore(self.MAX_REJECTING)
        self._lock = threading.Lock()
        self._threads: Set[threading.Thread] = set()
        self._accepting = True

        self.total_handled = 0
        self.total_rejected = 0

    @property
    def active_count(self) -> int:
        """Worker and reject threads still running."""
        with self._lock:
            return len(self._threads)

    def submit(self, conn: Connection) -> bool:
        """
        Start a thread for conn, or reject it when every slot is taken.

        Never blocks on the client.

        Returns:
            True if a worker thread was started.
        """
        if self._accepting and self._slots.acquire(blocking=False):
            if self._start(conn, self._handler, self._slots, "conn"):
                return True
            self._slots.release()
        elif self._accepting:
            logger.warning(
                f"Connection limit reached ({self.max_connections}); "
                f"rejecting {conn.client_ip}"
            )
        else:
            logger.info(f"Shutting down; rejecting {conn.client_ip}")

        with self._lock:
            self.total_rejected += 1

        if self._reject_slots.acquire(blocking=False):
            if self._start(conn, self._reject, self._reject_slots, "reject"):
                return False
            self._reject_slots.release()

        # No thread to write a 503 on: drop the connection
        conn.close(drain_timeout=0)
        return False

    def _start(
        self,
        conn: Connection,
        target: Callable[[Connection], None],
        slots: threading.BoundedSemaphore,
        kind: str,
    ) -> bool:
        """Run target(conn) on a daemon thread that releases slots when done."""
        thread = threading.Thread(
            target=self._run,
            args=(conn, target, slots),
            name=f"embedhttp-{kind}-{conn.id}",
            daemon=True,
        )
        with self._lock:
            self._threads.add(thread)
        try:
            thread.start()
        except RuntimeError:
            # Interpreter refused a new thread ("can't start new thread")
            with self._lock:
                self._threads.discard(thread)
            logger.exception(f"[{conn.id}] Could not start {kind} thread")
            return False
        return True

    def _run(
        self,
        conn: Connection,
        target: Callable[[Connection], None],
        slots: threading.BoundedSemaphore,
    ) -> None:
        try:
            target(conn)
        except Exception:
            # The handler already turns request failures into responses;
            # reaching here means the connection plumbing itself broke
            logger.exception(f"[{conn.id}] Unhandled error in connection thread")
            conn.close()
        finally:
            # Slot first: once a thread leaves _threads its slot is free
            slots.release()
            with self._lock:
                self._threads.discard(threading.current_thread())
                if slots is self._slots:
                    self.total_handled += 1

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Stop taking new connections and wait for running ones.

        Args:
            timeout: Total seconds to wait across all threads; None waits
                for ever.

        Returns:
            True if every worker finished in time. Stragglers are daemon
            threads and do not keep the process alive.
        """
        self._accepting = False
        with self._lock:
            threads = list(self._threads)

        if threads:
            logger.info(f"Waiting for {len(threads)} in-flight connection(s)...")

        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)

        leftover = self.active_count
        if leftover:
            logger.warning(f"{leftover} connection(s) still running after shutdown timeout")
            return False
        return True
