"""
=============================================================================
HTTP - Protocol Layer
=============================================================================

Everything here works on bytes and Python objects only; no sockets.
That keeps parsing, routing and serialization testable in isolation.

    bytes ──► RequestParser ──► Request ──► Router.match() ──► handler
                                                                  │
    bytes ◄── build_response() ◄── Response ◄─────────────────────┘

=============================================================================
"""

from .json_value import JSONKind, JSONValue, encode_json
from .request import (
    Headers,
    HTTPParseError,
    QueryParams,
    Request,
    RequestParser,
    parse_request,
)
from .response import (
    Response,
    build_response,
    # Stock error responses, all shaped {"error": "<message>"}
    error_response,
    bad_request,          # 400
    not_found,            # 404
    request_timeout,      # 408
    payload_too_large,    # 413
    internal_error,       # 500
    service_unavailable,  # 503
)
from .router import NOT_FOUND, Route, Router, RouterFrozenError
from .status_codes import HTTPStatus, status_phrase

__all__ = [
    # JSON
    "JSONKind",
    "JSONValue",
    "encode_json",

    # Requests
    "Headers",
    "QueryParams",
    "HTTPParseError",
    "Request",
    "RequestParser",
    "parse_request",

    # Responses
    "Response",
    "build_response",
    "error_response",
    "bad_request",
    "not_found",
    "request_timeout",
    "payload_too_large",
    "internal_error",
    "service_unavailable",

    # Routing
    "NOT_FOUND",
    "Route",
    "Router",
    "RouterFrozenError",

    # Status codes
    "HTTPStatus",
    "status_phrase",
]
