"""
=============================================================================
JSON VALUE & ENCODER
=============================================================================

A tagged JSON value plus a canonical serializer for response bodies.

=============================================================================
WHY NOT JUST json.dumps()?
=============================================================================

json.dumps() is fine for "some JSON", but response bodies here must be
byte-for-byte predictable:

    json.dumps({"n": 1.0})          → '{"n": 1.0}'      (spaces, "1.0")
    JSONValue.of({"n": 1.0}).encode() → '{"n":1}'         (canonical)

The encoder follows the ECMAScript / RFC 8785 rules for numbers, so the
same value always produces the same bytes:

    ┌──────────────────┬─────────────────┐
    │  Python value    │  Encoded        │
    ├──────────────────┼─────────────────┤
    │  None            │  null           │
    │  True / False    │  true / false   │
    │  42              │  42             │
    │  1.0             │  1              │
    │  0.1             │  0.1            │
    │  1e21            │  1e+21          │
    │  1e-7            │  1e-7           │
    │  -0.0            │  0              │
    │  "a\"b"          │  "a\\"b"        │
    │  [1, "x"]        │  [1,"x"]        │
    │  {"k": None}     │  {"k":null}     │
    └──────────────────┴─────────────────┘

=============================================================================
TAGGED VARIANT
=============================================================================

A JSONValue carries exactly one kind:

    JSONValue(kind=JSONKind.STRING, value="hello")
    JSONValue(kind=JSONKind.OBJECT, value=(("message", JSONValue(...)),))

Objects are stored as a tuple of (key, value) pairs, so insertion order is
part of the value and is reproduced exactly when encoding.

=============================================================================
"""

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Tuple


class JSONKind(Enum):
    """The six JSON value kinds."""
    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


# Short escapes defined by RFC 8259; every other control char uses \u00XX
_SHORT_ESCAPES = {
    '"': '\\"',
    "\\": "\\\\",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}


@dataclass(frozen=True)
class JSONValue:
    """
    An immutable JSON value.

    Build values with the classmethod constructors (null(), boolean(),
    number(), string(), array(), object()) or convert plain Python data
    with JSONValue.of(). The constructors validate the payload, so a
    JSONValue can never hold a payload that does not match its kind.

    Example:
        value = JSONValue.object([("message", "Hello world")])
        value.encode()   # '{"message":"Hello world"}'
    """

    kind: JSONKind
    value: Any = None

    def __post_init__(self):
        _check_payload(self.kind, self.value)

    # =========================================================================
    # CONSTRUCTORS
    # =========================================================================

    @classmethod
    def null(cls) -> "JSONValue":
        return cls(JSONKind.NULL)

    @classmethod
    def boolean(cls, value: bool) -> "JSONValue":
        return cls(JSONKind.BOOL, value)

    @classmethod
    def number(cls, value) -> "JSONValue":
        return cls(JSONKind.NUMBER, value)

    @classmethod
    def string(cls, value: str) -> "JSONValue":
        return cls(JSONKind.STRING, value)

    @classmethod
    def array(cls, items: Iterable[Any]) -> "JSONValue":
        """Build an array; each item is converted with JSONValue.of()."""
        return cls(JSONKind.ARRAY, tuple(cls.of(item) for item in items))

    @classmethod
    def object(cls, pairs) -> "JSONValue":
        """
        Build an object from ordered key/value pairs.

        Accepts:
            - a mapping:                 {"a": 1, "b": 2}
            - a sequence of pairs:       [("a", 1), ("b", 2)] or [["a", 1]]
            - a flat alternating list:   ["a", 1, "b", 2]

        Keys must be strings. A repeated key raises ValueError instead of
        silently replacing the earlier value.

        Raises:
            TypeError: If pairs has none of the shapes above.
            ValueError: On duplicate keys.
        """
        members = []
        seen = set()
        for key, item in _iter_pairs(pairs):
            if not isinstance(key, str):
                raise TypeError(
                    f"JSON object keys must be str, not {type(key).__name__}"
                )
            if key in seen:
                raise ValueError(f"Duplicate JSON object key: {key!r}")
            seen.add(key)
            members.append((key, cls.of(item)))
        return cls(JSONKind.OBJECT, tuple(members))

    @classmethod
    def of(cls, value: Any) -> "JSONValue":
        """
        Tag a plain Python value.

        The mapping is explicit; anything outside it is rejected rather
        than coerced (no str() fallback):

            None → null, bool → bool, int/float → number, str → string,
            list/tuple → array, Mapping → object, JSONValue → itself

        Raises:
            TypeError: For unsupported types.
        """
        if isinstance(value, JSONValue):
            return value
        if value is None:
            return cls.null()
        # bool before int: bool is a subclass of int
        if isinstance(value, bool):
            return cls.boolean(value)
        if isinstance(value, (int, float)):
            return cls.number(value)
        if isinstance(value, str):
            return cls.string(value)
        if isinstance(value, (list, tuple)):
            return cls.array(value)
        if isinstance(value, Mapping):
            return cls.object(value)
        raise TypeError(
            f"Object of type {type(value).__name__} is not JSON serializable"
        )

    # =========================================================================
    # SERIALIZATION
    # =========================================================================

    def encode(self) -> str:
        """Serialize to compact canonical JSON text."""
        parts: list[str] = []
        _encode_into(self, parts)
        return "".join(parts)

    def to_bytes(self) -> bytes:
        """Serialize to UTF-8 bytes (what goes into a response body)."""
        return self.encode().encode("utf-8")

    def to_python(self) -> Any:
        """Convert back to plain Python data (objects become dicts)."""
        if self.kind is JSONKind.ARRAY:
            return [item.to_python() for item in self.value]
        if self.kind is JSONKind.OBJECT:
            return {key: item.to_python() for key, item in self.value}
        return self.value


# =============================================================================
# VALIDATION
# =============================================================================

def _check_payload(kind: JSONKind, value: Any) -> None:
    if kind is JSONKind.NULL:
        if value is not None:
            raise ValueError("null JSONValue cannot carry a payload")
    elif kind is JSONKind.BOOL:
        if not isinstance(value, bool):
            raise TypeError(f"bool JSONValue needs a bool, got {type(value).__name__}")
    elif kind is JSONKind.NUMBER:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"number JSONValue needs an int or float, got {type(value).__name__}")
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError(f"Out of range float values are not JSON compliant: {value!r}")
    elif kind is JSONKind.STRING:
        if not isinstance(value, str):
            raise TypeError(f"string JSONValue needs a str, got {type(value).__name__}")
    elif kind is JSONKind.ARRAY:
        if not isinstance(value, tuple) or not all(isinstance(v, JSONValue) for v in value):
            raise TypeError("array JSONValue needs a tuple of JSONValue")
    elif kind is JSONKind.OBJECT:
        if not isinstance(value, tuple) or not all(
            isinstance(member, tuple)
            and len(member) == 2
            and isinstance(member[0], str)
            and isinstance(member[1], JSONValue)
            for member in value
        ):
            raise TypeError("object JSONValue needs a tuple of (str, JSONValue) pairs")


def _iter_pairs(pairs) -> Iterable[Tuple[Any, Any]]:
    """Normalize the accepted object shapes to (key, value) pairs."""
    if isinstance(pairs, Mapping):
        return list(pairs.items())

    if isinstance(pairs, (str, bytes)) or not isinstance(pairs, Iterable):
        raise TypeError(f"Cannot build a JSON object from {type(pairs).__name__}")

    items = list(pairs)
    if all(_is_pair(item) for item in items):
        return [tuple(item) for item in items]

    # Flat alternating form: ["key", value, "key2", value2]
    if len(items) % 2 == 0 and all(isinstance(k, str) for k in items[0::2]):
        return list(zip(items[0::2], items[1::2]))

    raise TypeError(
        "JSON object needs a mapping, (key, value) pairs, or alternating key/value items"
    )


def _is_pair(item: Any) -> bool:
    """A two-item tuple or list; strings never count, even of length 2."""
    return (
        isinstance(item, Sequence)
        and not isinstance(item, (str, bytes, bytearray))
        and len(item) == 2
    )


# =============================================================================
# ENCODER
# =============================================================================

def _encode_into(value: JSONValue, parts: list) -> None:
    kind = value.kind
    if kind is JSONKind.NULL:
        parts.append("null")
    elif kind is JSONKind.BOOL:
        parts.append("true" if value.value else "false")
    elif kind is JSONKind.NUMBER:
        parts.append(format_number(value.value))
    elif kind is JSONKind.STRING:
        parts.append(quote_string(value.value))
    elif kind is JSONKind.ARRAY:
        parts.append("[")
        for index, item in enumerate(value.value):
            if index:
                parts.append(",")
            _encode_into(item, parts)
        parts.append("]")
    else:
        parts.append("{")
        for index, (key, item) in enumerate(value.value):
            if index:
                parts.append(",")
            parts.append(quote_string(key))
            parts.append(":")
            _encode_into(item, parts)
        parts.append("}")


def quote_string(text: str) -> str:
    """
    Quote and escape a string per RFC 8259.

    Escapes the quote, the backslash and all control characters
    (U+0000-U+001F). Lone surrogates are written as \\uXXXX so the result
    is always encodable as UTF-8. Everything else passes through.
    """
    out = ['"']
    for char in text:
        escaped = _SHORT_ESCAPES.get(char)
        if escaped is not None:
            out.append(escaped)
            continue
        code = ord(char)
        if code < 0x20 or 0xD800 <= code <= 0xDFFF:
            out.append(f"\\u{code:04x}")
        else:
            out.append(char)
    out.append('"')
    return "".join(out)


def format_number(number) -> str:
    """
    Format a number in its canonical shortest form.

    Integers are written in full. Floats use the ECMAScript Number-to-String
    rules (as in RFC 8785): shortest round-trip digits, plain notation for
    exponents in [-7, 21), scientific notation otherwise.

        1.0   → "1"        123.45 → "123.45"     1e21  → "1e+21"
        1e-6  → "0.000001" 1e-7   → "1e-7"       -0.0  → "0"

    Raises:
        ValueError: For NaN or infinities.
    """
    if isinstance(number, bool):
        raise TypeError("bool is not a JSON number")
    # Base-class __repr__ so subclasses like IntEnum cannot change the text
    if isinstance(number, int):
        return int.__repr__(number)
    if not math.isfinite(number):
        raise ValueError(f"Out of range float values are not JSON compliant: {number!r}")
    if number == 0:
        return "0"

    # repr() gives the shortest digit string that round-trips
    sign, digit_tuple, exponent = Decimal(float.__repr__(number)).as_tuple()
    digits = "".join(str(d) for d in digit_tuple).rstrip("0")
    # Value is 0.<digits> × 10^point
    point = len(digit_tuple) + exponent
    k = len(digits)
    prefix = "-" if sign else ""

    if k <= point <= 21:
        body = digits + "0" * (point - k)
    elif 0 < point <= 21:
        body = digits[:point] + "." + digits[point:]
    elif -6 < point <= 0:
        body = "0." + "0" * (-point) + digits
    else:
        exp = point - 1
        exp_text = f"e+{exp}" if exp >= 0 else f"e-{-exp}"
        mantissa = digits if k == 1 else digits[0] + "." + digits[1:]
        body = mantissa + exp_text

    return prefix + body


def encode_json(value: Any) -> str:
    """Encode plain Python data (or a JSONValue) as canonical JSON text."""
    return JSONValue.of(value).encode()
