"""
=============================================================================
HTTP RESPONSE BUILDER
=============================================================================

Builds HTTP/1.1 responses and serializes them to wire bytes.

=============================================================================
HTTP RESPONSE ANATOMY
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                     HTTP RESPONSE STRUCTURE                         │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │    HTTP/1.1 200 OK\r\n                       ← status line           │
    │    Content-Type: application/json\r\n        ← headers, in the      │
    │    Content-Length: 25\r\n                      order they were set   │
    │    \r\n                                      ← blank line            │
    │    {"message":"Hello world"}                 ← body                  │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
RESPONSE LIFECYCLE
=============================================================================

    Server creates           Handler mutates           Server serializes
    Response()     ─────►    response.json(...)  ─────► response.to_bytes()
    (200, {}, b"")           response.status = 201      (exactly once)

A handler never returns anything; its only effect is what it leaves on the
Response it was given.

=============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Union

from .json_value import JSONValue
from .status_codes import HTTPStatus, status_phrase


JSON_CONTENT_TYPE = "application/json"


@dataclass
class Response:
    """
    A mutable HTTP response.

    Handlers receive an empty Response (200, no headers, empty body) and
    fill it in. Header names keep the case they were set with; setting a
    header replaces any existing header with the same name in any case.

    Example:
        def index(request, response):
            response.json([("message", "Hello world")])

        def create(request, response):
            response.status = 201
            response.set_header("Location", "/items/1")
    """

    status: int = HTTPStatus.OK
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    version: str = "HTTP/1.1"

    @property
    def status_line(self) -> str:
        """Status line, e.g. "HTTP/1.1 200 OK"."""
        return f"{self.version} {int(self.status)} {status_phrase(self.status)}"

    # =========================================================================
    # HEADERS
    # =========================================================================

    def get_header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup."""
        key = _find_header(self.headers, name)
        return self.headers[key] if key is not None else default

    def set_header(self, name: str, value: str) -> "Response":
        """
        Set a header, replacing any existing one with the same name.

        Returns self for method chaining.
        """
        existing = _find_header(self.headers, name)
        if existing is not None:
            del self.headers[existing]
        self.headers[name] = value
        return self

    def remove_header(self, name: str) -> "Response":
        existing = _find_header(self.headers, name)
        if existing is not None:
            del self.headers[existing]
        return self

    def set_default_header(self, name: str, value: str) -> "Response":
        """Set a header only if the handler did not set it."""
        if _find_header(self.headers, name) is None:
            self.headers[name] = value
        return self

    # =========================================================================
    # STATUS AND BODY
    # =========================================================================

    def set_status(self, status: int) -> "Response":
        self.status = status
        return self

    def set_body(self, body: Union[str, bytes]) -> "Response":
        """Set the raw body. Strings are encoded as UTF-8."""
        self.body = body.encode("utf-8") if isinstance(body, str) else bytes(body)
        return self

    def json(self, pairs: Any) -> "Response":
        """
        Set a JSON object body.

        Builds one JSON object from ordered key/value data, serializes it
        canonically and sets Content-Type: application/json.

        Accepts (see JSONValue.object):
            response.json([("message", "Hello world")])   # pairs
            response.json(["message", "Hello world"])     # alternating
            response.json({"message": "Hello world"})     # mapping

        Field order is preserved exactly; nothing is dropped or reordered.

        Raises:
            TypeError / ValueError: If the data cannot be represented.
        """
        value = pairs if isinstance(pairs, JSONValue) else JSONValue.object(pairs)
        self.body = value.to_bytes()
        return self.set_header("Content-Type", JSON_CONTENT_TYPE)

    def json_value(self, value: Any) -> "Response":
        """Set any JSON value (array, string, ...) as the body."""
        self.body = JSONValue.of(value).to_bytes()
        return self.set_header("Content-Type", JSON_CONTENT_TYPE)

    def text(self, text: str, content_type: str = "text/plain; charset=utf-8") -> "Response":
        self.body = text.encode("utf-8")
        return self.set_header("Content-Type", content_type)

    def html(self, html: str) -> "Response":
        return self.text(html, "text/html; charset=utf-8")

    # =========================================================================
    # SERIALIZATION
    # =========================================================================

    def to_bytes(self) -> bytes:
        """Serialize with build_response()."""
        return build_response(self.status, self.headers, self.body, self.version)


def build_response(
    status: int,
    headers: Mapping[str, str],
    body: Union[bytes, str] = b"",
    version: str = "HTTP/1.1",
) -> bytes:
    """
    Serialize a response to wire bytes.

    =====================================================================
    SERIALIZATION FORMAT
    =====================================================================

        HTTP/1.1 200 OK\\r\\n           ← status line
        <headers in insertion order>\\r\\n
        Content-Length: <len(body)>\\r\\n ← added unless already set
        \\r\\n                          ← blank line
        <body bytes>

    =====================================================================

    Args:
        status: Integer status code, 100-599.
        headers: Header name → value. An explicit Content-Length is kept.
        body: Body bytes (str is encoded as UTF-8).
        version: HTTP version for the status line.

    Raises:
        ValueError: For an invalid status, or a header name/value that
            contains CR or LF (which would let the caller inject headers).
    """
    if isinstance(body, str):
        body = body.encode("utf-8")

    lines = [f"{version} {int(status)} {status_phrase(status)}"]

    for name, value in headers.items():
        value = str(value)
        if not name or any(c in name for c in "\r\n:") or "\r" in value or "\n" in value:
            raise ValueError(f"Invalid header: {name!r}: {value!r}")
        lines.append(f"{name}: {value}")

    if _find_header(headers, "Content-Length") is None:
        lines.append(f"Content-Length: {len(body)}")

    lines.append("")
    lines.append("")
    # ISO-8859-1 is the header charset; reject anything it cannot carry
    try:
        head = "\r\n".join(lines).encode("iso-8859-1")
    except UnicodeEncodeError as e:
        raise ValueError(f"Header contains non-Latin-1 characters: {e}") from e
    return head + body


def _find_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Return the stored key matching name case-insensitively, or None."""
    lowered = name.lower()
    for key in headers:
        if key.lower() == lowered:
            return key
    return None


def format_http_date(dt: datetime) -> str:
    """
    Format a datetime as an HTTP-date (RFC 7231).

    Format: Day, DD Mon YYYY HH:MM:SS GMT
    Example: Thu, 15 Jan 2026 12:30:45 GMT

    The datetime must be in UTC.
    """
    days = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
    months = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
              "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

    return (
        f"{days[dt.weekday()]}, "
        f"{dt.day:02d} {months[dt.month - 1]} {dt.year} "
        f"{dt.hour:02d}:{dt.minute:02d}:{dt.second:02d} GMT"
    )


# =============================================================================
# ERROR RESPONSES
# =============================================================================
#
# Every error the framework generates has the same shape:
#
#     {"error":"<message>"}
#
# Bodies are fixed strings, so the same failure always produces the same
# bytes. Handler failures never put exception text in the body.
#
# =============================================================================

def error_response(status: int, message: Optional[str] = None) -> Response:
    """Build a JSON error response; message defaults to the reason phrase."""
    response = Response(status=status)
    return response.json([("error", message or status_phrase(status))])


def bad_request(message: str = "Bad Request") -> Response:
    return error_response(HTTPStatus.BAD_REQUEST, message)


def not_found() -> Response:
    """404 with a stable body: {"error":"Not Found"}."""
    return error_response(HTTPStatus.NOT_FOUND)


def request_timeout() -> Response:
    return error_response(HTTPStatus.REQUEST_TIMEOUT)


def payload_too_large(message: str = "Payload Too Large") -> Response:
    return error_response(HTTPStatus.PAYLOAD_TOO_LARGE, message)


def internal_error() -> Response:
    """500 with a generic body; details stay in the server log."""
    return error_response(HTTPStatus.INTERNAL_SERVER_ERROR)


def service_unavailable(message: str = "Server overloaded") -> Response:
    return error_response(HTTPStatus.SERVICE_UNAVAILABLE, message)
