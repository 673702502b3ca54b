"""
=============================================================================
HTTP REQUEST PARSER
=============================================================================

Parses raw HTTP/1.1 request bytes into immutable Request objects.
Implements the subset of RFC 7230 the framework needs: request line,
header block, optional Content-Length body.

=============================================================================
HTTP REQUEST ANATOMY
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                     HTTP REQUEST STRUCTURE                          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   GET /api/users?page=1 HTTP/1.1\r\n      ← request line             │
    │   ─┬─ ─────────┬─────── ────┬────                                    │
    │  Method     Target       Version                                     │
    │                                                                      │
    │   Host: localhost:8080\r\n                ← headers                  │
    │   Content-Length: 13\r\n                                             │
    │   \r\n                                    ← blank line               │
    │   {"name":"x"}\n                          ← body (13 bytes)          │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
WHAT IS REJECTED
=============================================================================

Every structural violation raises HTTPParseError. The server turns it into
an error response; it never reaches the accept loop.

    Request line not "METHOD SP TARGET SP VERSION"    → 400
    Method not a token, target not starting with "/" → 400
    Version other than HTTP/1.0 or HTTP/1.1           → 400
    Header line without a colon / bad header name     → 400
    Conflicting or non-numeric Content-Length         → 400
    Body shorter than Content-Length                  → 400
    Body longer than max_body_size                    → 413
    Header block larger than max_header_size          → 431
    Any Transfer-Encoding (chunked is not supported)  → 501

=============================================================================
"""

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Dict, Iterator, Optional, Tuple
from urllib.parse import parse_qsl, unquote

from .status_codes import HTTPStatus


# CTLs are never valid in a request target or header value
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

_ENCODED_SLASH = re.compile(r"%2f", re.IGNORECASE)


class HTTPParseError(Exception):
    """
    Raised when inbound bytes are not a valid request.

    Carries the HTTP status code to answer with. Almost every parse
    failure is a plain 400 Bad Request; size limits use more specific codes.
    """

    def __init__(self, message: str, status_code: int = HTTPStatus.BAD_REQUEST):
        super().__init__(message)
        self.status_code = status_code


class Headers(Mapping):
    """
    Read-only, case-insensitive header mapping.

    Names are normalized to lowercase once, at construction:

        headers = Headers({"Content-Type": "text/html"})
        headers["content-type"]   # "text/html"
        headers["CONTENT-TYPE"]   # "text/html"
    """

    __slots__ = ("_items",)

    def __init__(self, items: Optional[Mapping] = None):
        self._items: Dict[str, str] = {}
        for name, value in (items or {}).items():
            self._items[name.lower()] = value

    def __getitem__(self, name: str) -> str:
        return self._items[name.lower()]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            return self._items == {str(k).lower(): v for k, v in other.items()}
        return NotImplemented

    def __hash__(self):
        return hash(tuple(sorted(self._items.items())))

    def __repr__(self) -> str:
        return f"Headers({self._items!r})"


class QueryParams(Mapping):
    """
    Read-only query parameter mapping (first value per name).

    Not a dict subclass, so in-place operators such as |= cannot write
    through it. Use dict(request.query_params) for a mutable copy.
    """

    __slots__ = ("_items",)

    def __init__(self, items: Optional[Mapping] = None):
        self._items: Dict[str, str] = dict(items or {})

    def __getitem__(self, name: str) -> str:
        return self._items[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __hash__(self):
        return hash(tuple(sorted(self._items.items())))

    def __repr__(self) -> str:
        return f"QueryParams({self._items!r})"


@dataclass(frozen=True)
class Request:
    """
    A parsed HTTP request.

    Immutable once constructed. Owned by the connection that produced it
    and handed to exactly one handler.

    Attributes:
        method:         Request method, exactly as sent ("GET", "POST", ...)
        path:           Percent-decoded path without the query string (%2F stays encoded)
        query_params:   Query parameters; first value wins for repeats
        headers:        Case-insensitive header mapping
        body:           Raw body bytes (b"" when there is no Content-Length)
        version:        "HTTP/1.1" or "HTTP/1.0"
        target:         The raw request target ("/users?page=1")
        query_string:   Raw query string ("page=1")
        client_address: (ip, port) of the peer
    """

    method: str
    path: str
    query_params: Mapping = field(default_factory=QueryParams)
    headers: Headers = field(default_factory=Headers)
    body: bytes = b""
    version: str = "HTTP/1.1"
    target: str = ""
    query_string: str = ""
    client_address: Tuple[str, int] = ("", 0)

    def __post_init__(self):
        # Accept plain dicts from callers and tests, store read-only views
        if not isinstance(self.headers, Headers):
            object.__setattr__(self, "headers", Headers(self.headers))
        if not isinstance(self.query_params, QueryParams):
            object.__setattr__(self, "query_params", QueryParams(self.query_params))
        if not self.target:
            target = self.path + ("?" + self.query_string if self.query_string else "")
            object.__setattr__(self, "target", target)

    # =========================================================================
    # ACCESSORS
    # =========================================================================

    def get_header(self, name: str, default: str = "") -> str:
        """Get a header value (case-insensitive)."""
        return self.headers.get(name, default)

    def get_query(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Get the first value of a query parameter."""
        return self.query_params.get(name, default)

    def get_query_list(self, name: str) -> list:
        """
        Get every value of a repeated query parameter.

        Example:
            # /items?tag=a&tag=b
            request.get_query_list("tag")   # ["a", "b"]
        """
        return [
            value
            for key, value in parse_qsl(self.query_string, keep_blank_values=True)
            if key == name
        ]

    @property
    def content_type(self) -> Optional[str]:
        """Content-Type without parameters ("application/json")."""
        value = self.headers.get("content-type", "")
        return value.split(";")[0].strip().lower() or None

    @property
    def content_length(self) -> int:
        try:
            return int(self.headers.get("content-length", 0))
        except ValueError:
            return 0

    @property
    def host(self) -> str:
        return self.headers.get("host", "")

    @property
    def is_json(self) -> bool:
        return self.content_type == "application/json"

    @property
    def text(self) -> str:
        """Body decoded as UTF-8 (invalid bytes replaced)."""
        return self.body.decode("utf-8", errors="replace")

    @cached_property
    def json(self) -> Any:
        """
        Body parsed as JSON (None for an empty body).

        Parsed once and cached.

        Raises:
            HTTPParseError: If the body is not valid JSON.
        """
        if not self.body:
            return None
        try:
            return json.loads(self.body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise HTTPParseError(f"Invalid JSON body: {e}")


@dataclass(frozen=True)
class RequestHead:
    """The request line and headers, before the body has been read."""

    method: str
    target: str
    path: str
    query_string: str
    version: str
    headers: Headers


class RequestParser:
    """
    Parses request heads and complete requests.

    ==========================================================================
    PARSER ARCHITECTURE
    ==========================================================================

        Raw bytes (from Connection.read_request)
              │
              ▼
        ┌───────────────────────────────────────────────────────────────┐
        │  1. parse_head()    request line + headers → RequestHead      │
        │  2. body_length()   validated Content-Length                  │
        │  3. build()         RequestHead + body → Request              │
        └───────────────────────────────────────────────────────────────┘
              │
              ▼
        Request (frozen dataclass)

    The socket side (accumulating partial reads, deadlines) lives in
    Connection; this class only looks at bytes it is given, so it can be
    tested without sockets.

    ==========================================================================
    """

    # RFC 7230 token characters, used for methods and header names
    TOKEN_PATTERN = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")
    SUPPORTED_VERSIONS = ("HTTP/1.0", "HTTP/1.1")

    def __init__(
        self,
        max_header_size: int = 64 * 1024,
        max_body_size: int = 1024 * 1024,
    ):
        """
        Args:
            max_header_size: Largest accepted request line + header block.
            max_body_size: Largest accepted Content-Length.
        """
        self.max_header_size = max_header_size
        self.max_body_size = max_body_size

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def parse(
        self,
        data: bytes,
        client_address: Tuple[str, int] = ("", 0),
    ) -> Request:
        """
        Parse one complete request held in memory.

        Args:
            data: Request bytes: head, blank line, and the full body.
            client_address: Peer (ip, port), stored on the Request.

        Raises:
            HTTPParseError: If the request is malformed or incomplete.
        """
        header_end = data.find(b"\r\n\r\n")
        if header_end == -1:
            if len(data) > self.max_header_size:
                raise HTTPParseError(
                    "Request header block too large",
                    status_code=HTTPStatus.REQUEST_HEADER_FIELDS_TOO_LARGE,
                )
            raise HTTPParseError("Incomplete request: no header terminator")

        head = self.parse_head(data[:header_end])
        length = self.body_length(head)

        body = data[header_end + 4:]
        if len(body) < length:
            raise HTTPParseError(
                f"Incomplete body: expected {length} bytes, got {len(body)}"
            )
        return self.build(head, body[:length], client_address)

    def parse_head(self, head: bytes) -> RequestHead:
        """
        Parse the request line and header lines.

        Args:
            head: Everything before the blank line, without the final CRLFCRLF.

        Raises:
            HTTPParseError: On the first structural violation.
        """
        if len(head) > self.max_header_size:
            raise HTTPParseError(
                "Request header block too large",
                status_code=HTTPStatus.REQUEST_HEADER_FIELDS_TOO_LARGE,
            )

        # Header bytes are ISO-8859-1 per RFC 7230; it decodes any byte
        text = head.decode("iso-8859-1")
        lines = text.split("\r\n")

        method, target, version = self._parse_request_line(lines[0])
        path, query_string = self._split_target(target)
        headers = self._parse_headers(lines[1:])

        return RequestHead(
            method=method,
            target=target,
            path=path,
            query_string=query_string,
            version=version,
            headers=headers,
        )

    def body_length(self, head: RequestHead) -> int:
        """
        Number of body bytes that follow the head.

        Raises:
            HTTPParseError: For Transfer-Encoding, a malformed Content-Length,
                or a body larger than max_body_size.
        """
        if "transfer-encoding" in head.headers:
            raise HTTPParseError(
                "Transfer-Encoding is not supported",
                status_code=HTTPStatus.NOT_IMPLEMENTED,
            )

        raw = head.headers.get("content-length")
        if raw is None:
            return 0

        # Repeated headers were joined with ", "; identical repeats are allowed
        values = {value.strip() for value in raw.split(",")}
        if len(values) != 1:
            raise HTTPParseError(f"Conflicting Content-Length values: {raw}")
        value = values.pop()
        if not value.isdigit() or not value.isascii():
            raise HTTPParseError(f"Invalid Content-Length: {raw}")

        length = int(value)
        if length > self.max_body_size:
            raise HTTPParseError(
                f"Request body too large: {length} bytes (limit {self.max_body_size})",
                status_code=HTTPStatus.PAYLOAD_TOO_LARGE,
            )
        return length

    def build(
        self,
        head: RequestHead,
        body: bytes,
        client_address: Tuple[str, int] = ("", 0),
    ) -> Request:
        """Assemble the final Request from a parsed head and its body."""
        query_params: Dict[str, str] = {}
        for key, value in parse_qsl(head.query_string, keep_blank_values=True):
            query_params.setdefault(key, value)

        return Request(
            method=head.method,
            path=head.path,
            query_params=query_params,
            headers=head.headers,
            body=body,
            version=head.version,
            target=head.target,
            query_string=head.query_string,
            client_address=client_address,
        )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _parse_request_line(self, line: str) -> Tuple[str, str, str]:
        """
        Split "METHOD SP TARGET SP VERSION".

        Exactly three non-empty parts separated by single spaces.
        """
        parts = line.split(" ")
        if len(parts) != 3 or not all(parts):
            raise HTTPParseError(f"Invalid request line: {line!r}")

        method, target, version = parts

        if not self.TOKEN_PATTERN.fullmatch(method):
            raise HTTPParseError(f"Invalid method: {method!r}")

        if version not in self.SUPPORTED_VERSIONS:
            raise HTTPParseError(f"Unsupported HTTP version: {version!r}")

        if not target.startswith("/") or _CONTROL_CHARS.search(target):
            raise HTTPParseError(f"Invalid request target: {target!r}")

        return method, target, version

    def _split_target(self, target: str) -> Tuple[str, str]:
        """
        '/a%20b?x=1' → ('/a b', 'x=1')

        Percent-escapes are decoded except %2F, which stays encoded (as
        "%2F") so an escaped slash never turns into a path separator:
        '/a%2F' is its own path, not '/a/'.
        """
        raw_path, _, query_string = target.partition("?")
        # Fragments are never sent by clients; drop one if present
        raw_path = raw_path.split("#", 1)[0]
        query_string = query_string.split("#", 1)[0]
        path = "%2F".join(unquote(segment) for segment in _ENCODED_SLASH.split(raw_path))
        return path, query_string

    def _parse_headers(self, lines: list) -> Headers:
        """
        Parse "Name: value" lines into a case-insensitive mapping.

        Repeated headers are joined with ", " (RFC 7230 section 3.2.2).
        Obsolete line folding is rejected like any other malformed line.
        """
        headers: Dict[str, str] = {}
        for line in lines:
            if not line:
                raise HTTPParseError("Empty header line")
            if line[0] in (" ", "\t"):
                raise HTTPParseError("Obsolete header line folding is not supported")

            name, sep, value = line.partition(":")
            if not sep or not self.TOKEN_PATTERN.fullmatch(name):
                raise HTTPParseError(f"Malformed header line: {line!r}")

            name = name.lower()
            value = value.strip(" \t")
            if _CONTROL_CHARS.search(value.replace("\t", "")):
                raise HTTPParseError(f"Invalid characters in header {name!r}")
            if name in headers:
                headers[name] += ", " + value
            else:
                headers[name] = value

        return Headers(headers)


def parse_request(
    data: bytes,
    client_address: Tuple[str, int] = ("", 0),
    max_body_size: int = 1024 * 1024,
) -> Request:
    """
    Parse a complete request in one call.

    Use RequestParser directly to reuse limits across many requests.
    """
    return RequestParser(max_body_size=max_body_size).parse(data, client_address)
