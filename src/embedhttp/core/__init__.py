"""
=============================================================================
CORE - Sockets and Threads
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   Listener ──accept()──► ConnectionWorkers ──thread──► Connection    │
    │   (1 thread)             (cap: max_connections)       (1 request)    │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

Each component has one job:
    - Listener: own the bound socket, accept, stop on shutdown()
    - ConnectionWorkers: run each connection on its own thread
    - Connection: read one request under a deadline, write one response

Nothing here knows about routes or handlers; App in server.py supplies
the callbacks.

=============================================================================
"""

from .connection import Connection, ConnectionState
from .listener import BindError, Listener
from .workers import ConnectionWorkers

__all__ = [
    "Listener",           # Bound socket + accept loop
    "BindError",          # bind()/listen() failed
    "Connection",         # One client socket
    "ConnectionState",    # Per-connection state machine
    "ConnectionWorkers",  # Thread per connection, capped
]
