"""Length-prefixed serialisation codec.

Implements the PHP ``serialize()`` wire format used by CMS option stores::

    N;                          null
    b:1;                        boolean
    i:42;                       integer
    d:0.5;                      float
    s:5:"hello";                string, length in UTF-8 bytes
    a:2:{i:0;s:1:"x";i:1;N;}    array
    O:3:"Foo":1:{s:1:"k";N;}    object

Every string length is a byte count, so a substitution that changes the
byte length of a payload must recompute the prefix of that payload and of
every enclosing composite.  Decoding works on bytes for that reason.

Arrays whose keys are exactly ``0..n-1`` in order decode to
:class:`~provisioning_engine.rewrite.values.Sequence`; all other arrays and
all objects decode to :class:`~provisioning_engine.rewrite.values.Mapping`.
A string payload that is itself a valid encoding decodes to
:class:`~provisioning_engine.rewrite.values.EncodedComposite`.  Numeric
literals keep their source text, so ``encode(decode(raw)) == raw`` for any
well-formed input.

Known limits: an empty mapping without a class name encodes as ``a:0:{}``
and therefore decodes back as an empty sequence, and the reference forms
``r:``/``R:`` and custom ``C:`` payloads are rejected as malformed.
"""

from __future__ import annotations

import math
import re

from provisioning_engine.errors import MalformedEncoding
from provisioning_engine.rewrite.values import (
    EncodedComposite,
    Mapping,
    MappingKey,
    Scalar,
    Sequence,
    Value,
)

DEFAULT_MAX_DEPTH = 50

# Whole-string shape check; a match still has to decode cleanly.
_ENCODED_SHAPE = re.compile(
    r"""^(?:
        N;
      | b:[01];
      | i:-?\d+;
      | d:(?:-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?|-?INF|NAN);
      | s:\d+:".*";
      | a:\d+:\{.*\}
      | O:\d+:"[^"]+":\d+:\{.*\}
    )$""",
    re.DOTALL | re.VERBOSE,
)


class _DepthExceeded(MalformedEncoding):
    """Nesting beyond the configured limit; never downgraded to plain text."""


def looks_encoded(candidate: str) -> bool:
    """Return ``True`` when *candidate* has the outer shape of an encoding."""
    return bool(_ENCODED_SHAPE.match(candidate))


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


class _Decoder:
    def __init__(self, data: bytes, max_depth: int) -> None:
        self._data = data
        self._pos = 0
        self._max_depth = max_depth

    def fail(self, reason: str) -> MalformedEncoding:
        return MalformedEncoding(f"{reason} at byte {self._pos}", offset=self._pos)

    def expect(self, token: bytes) -> None:
        end = self._pos + len(token)
        if self._data[self._pos : end] != token:
            raise self.fail(f"expected {token.decode()!r}")
        self._pos = end

    def read_until(self, terminator: bytes) -> bytes:
        end = self._data.find(terminator, self._pos)
        if end < 0:
            raise self.fail(f"unterminated token, missing {terminator.decode()!r}")
        chunk = self._data[self._pos : end]
        self._pos = end + len(terminator)
        return chunk

    def read_count(self, terminator: bytes) -> int:
        chunk = self.read_until(terminator)
        if not chunk.isdigit():
            raise self.fail("invalid length prefix")
        return int(chunk)

    def read_bytes(self, length: int) -> bytes:
        end = self._pos + length
        if end > len(self._data):
            raise self.fail("length prefix exceeds input")
        chunk = self._data[self._pos : end]
        self._pos = end
        return chunk

    def read_text(self, length: int) -> str:
        raw = self.read_bytes(length)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise self.fail("payload is not valid UTF-8") from exc

    def at_end(self) -> bool:
        return self._pos == len(self._data)

    # -- values ------------------------------------------------------------

    def value(self, depth: int) -> Value:
        if depth > self._max_depth:
            raise _DepthExceeded(
                f"nesting exceeds maximum depth {self._max_depth}",
                offset=self._pos,
            )
        tag = self._data[self._pos : self._pos + 2]
        if tag == b"N;":
            self._pos += 2
            return Scalar(None)
        if tag == b"b:":
            self._pos += 2
            literal = self.read_until(b";").decode("ascii", "replace")
            if literal not in ("0", "1"):
                raise self.fail("invalid boolean")
            return Scalar(literal == "1")
        if tag == b"i:":
            self._pos += 2
            literal = self.read_until(b";").decode("ascii", "replace")
            try:
                return Scalar(int(literal), literal=literal)
            except ValueError as exc:
                raise self.fail("invalid integer") from exc
        if tag == b"d:":
            self._pos += 2
            literal = self.read_until(b";").decode("ascii", "replace")
            try:
                return Scalar(float(literal), literal=literal)
            except ValueError as exc:
                raise self.fail("invalid float") from exc
        if tag == b"s:":
            self._pos += 2
            return self._classify(self.string_body(), depth)
        if tag == b"a:":
            self._pos += 2
            count = self.read_count(b":")
            self.expect(b"{")
            entries = self.entries(count, depth)
            self.expect(b"}")
            if all(isinstance(k, int) and k == i for i, (k, _) in enumerate(entries)):
                return Sequence(tuple(v for _, v in entries))
            return Mapping(tuple(entries))
        if tag == b"O:":
            self._pos += 2
            name_length = self.read_count(b":")
            self.expect(b'"')
            class_name = self.read_text(name_length)
            self.expect(b'":')
            count = self.read_count(b":")
            self.expect(b"{")
            entries = self.entries(count, depth)
            self.expect(b"}")
            return Mapping(tuple(entries), class_name=class_name)
        raise self.fail(f"unknown type tag {tag.decode('ascii', 'replace')!r}")

    def string_body(self) -> str:
        length = self.read_count(b":")
        self.expect(b'"')
        payload = self.read_text(length)
        self.expect(b'";')
        return payload

    def key(self) -> MappingKey:
        tag = self._data[self._pos : self._pos + 2]
        if tag == b"i:":
            self._pos += 2
            literal = self.read_until(b";").decode("ascii", "replace")
            try:
                return int(literal)
            except ValueError as exc:
                raise self.fail("invalid integer key") from exc
        if tag == b"s:":
            self._pos += 2
            return self.string_body()
        raise self.fail("array keys must be integers or strings")

    def entries(self, count: int, depth: int) -> list[tuple[MappingKey, Value]]:
        return [(self.key(), self.value(depth + 1)) for _ in range(count)]

    def _classify(self, payload: str, depth: int) -> Value:
        if not looks_encoded(payload):
            return Scalar(payload)
        try:
            decode(payload, max_depth=self._max_depth - depth - 1)
        except _DepthExceeded:
            raise
        except MalformedEncoding:
            return Scalar(payload)
        return EncodedComposite(payload)


def decode(raw: str, *, max_depth: int = DEFAULT_MAX_DEPTH) -> Value:
    """Decode *raw* into a value tree.

    Raises
    ------
    MalformedEncoding
        If *raw* is not a single well-formed encoding, or nests deeper than
        *max_depth* levels.
    """
    if max_depth < 0:
        raise _DepthExceeded("nesting exceeds maximum depth")
    decoder = _Decoder(raw.encode("utf-8"), max_depth)
    result = decoder.value(0)
    if not decoder.at_end():
        raise decoder.fail("trailing data after value")
    return result


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _encode_string(payload: str) -> str:
    return f's:{len(payload.encode("utf-8"))}:"{payload}";'


def _encode_float(number: float) -> str:
    if math.isnan(number):
        return "NAN"
    if math.isinf(number):
        return "INF" if number > 0 else "-INF"
    return repr(number)


def _encode_key(key: MappingKey) -> str:
    if isinstance(key, bool) or not isinstance(key, (int, str)):
        raise TypeError(f"unsupported mapping key type: {type(key).__name__}")
    if isinstance(key, int):
        return f"i:{key};"
    return _encode_string(key)


def _encode_scalar(scalar: Scalar) -> str:
    value = scalar.value
    if value is None:
        return "N;"
    if isinstance(value, bool):
        return f"b:{int(value)};"
    if isinstance(value, int):
        return f"i:{scalar.literal if scalar.literal is not None else value};"
    if isinstance(value, float):
        return f"d:{scalar.literal if scalar.literal is not None else _encode_float(value)};"
    if isinstance(value, str):
        return _encode_string(value)
    raise TypeError(f"unsupported scalar type: {type(value).__name__}")


def encode(value: Value) -> str:
    """Encode *value*, computing every length prefix from the payload bytes."""
    if isinstance(value, Scalar):
        return _encode_scalar(value)
    if isinstance(value, EncodedComposite):
        return _encode_string(value.raw)
    if isinstance(value, Sequence):
        body = "".join(f"i:{index};{encode(item)}" for index, item in enumerate(value.items))
        return f"a:{len(value.items)}:{{{body}}}"
    if isinstance(value, Mapping):
        body = "".join(_encode_key(k) + encode(v) for k, v in value.entries)
        if value.class_name is not None:
            name_length = len(value.class_name.encode("utf-8"))
            return f'O:{name_length}:"{value.class_name}":{len(value.entries)}:{{{body}}}'
        return f"a:{len(value.entries)}:{{{body}}}"
    raise TypeError(f"unsupported value type: {type(value).__name__}")


def verify_lengths(raw: str) -> bool:
    """Return ``True`` when every length prefix in *raw* matches its payload.

    A decode succeeds only if every prefix is exact, and the re-encoded form
    must reproduce *raw* byte for byte.
    """
    try:
        return encode(decode(raw)) == raw
    except MalformedEncoding:
        return False
