"""
=============================================================================
EMBEDHTTP - Embeddable HTTP Application Core
=============================================================================

A small HTTP/1.1 application core for programs that want to answer HTTP
requests without a framework: register handlers on an App, call run().

=============================================================================
PACKAGE STRUCTURE
=============================================================================

    embedhttp/
    ├── __init__.py          # This file - package exports
    ├── server.py            # App: routes + run()/shutdown()
    ├── config.py            # ServerConfig dataclass
    ├── core/                # Sockets and threads
    │   ├── listener.py      # Bound socket + accept loop
    │   ├── connection.py    # One client socket, one request
    │   └── workers.py       # Thread per connection, with a cap
    └── http/                # Protocol, no sockets
        ├── json_value.py    # JSONValue + canonical encoder
        ├── request.py       # Request + RequestParser
        ├── response.py      # Response + build_response()
        ├── router.py        # Exact (method, path) routing
        └── status_codes.py  # HTTPStatus

=============================================================================
QUICK START
=============================================================================

    from embedhttp import App

    app = App()

    @app.get("/")
    def index(request, response):
        response.json([("message", "Hello world")])

    @app.post("/echo")
    def echo(request, response):
        response.status = 201
        response.json([("received", request.json)])

    app.run(8080)

=============================================================================
"""

__version__ = "1.0.0"

from .config import ServerConfig
from .core.listener import BindError
from .http.json_value import JSONValue, encode_json
from .http.request import HTTPParseError, Request
from .http.response import Response
from .http.router import NOT_FOUND, Router, RouterFrozenError
from .http.status_codes import HTTPStatus
from .server import App, create_app

__all__ = [
    "App",
    "create_app",
    "ServerConfig",
    "Request",
    "Response",
    "Router",
    "NOT_FOUND",
    "JSONValue",
    "encode_json",
    "HTTPStatus",
    "HTTPParseError",
    "BindError",
    "RouterFrozenError",
    "__version__",
]
