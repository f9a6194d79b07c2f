"""Reference rewrite engine.

Replaces every occurrence of a template identifier inside a content value
tree, descending into nested length-prefixed encodings and recomputing their
length prefixes on the way back out.

The rewrite is pure and structure-sharing: when nothing below a node changes,
the node itself is returned.  Callers use identity (``result is original``)
to decide whether a stored value needs to be written at all.
"""

from __future__ import annotations

from typing import Any, Iterable

from provisioning_engine.errors import MalformedEncoding
from provisioning_engine.rewrite import codec
from provisioning_engine.rewrite.values import (
    EncodedComposite,
    Mapping,
    Scalar,
    Sequence,
    Value,
)

DEFAULT_MAX_DEPTH = codec.DEFAULT_MAX_DEPTH


class _Rewriter:
    def __init__(self, old: str, new: str, max_depth: int) -> None:
        self.old = old
        self.new = new
        self.max_depth = max_depth

    def visit(self, value: Value, depth: int) -> Value:
        if depth > self.max_depth:
            raise MalformedEncoding(f"content nests deeper than {self.max_depth} levels")

        if isinstance(value, Scalar):
            if isinstance(value.value, str) and self.old in value.value:
                return Scalar(value.value.replace(self.old, self.new))
            return value

        if isinstance(value, Sequence):
            items = tuple(self.visit(item, depth + 1) for item in value.items)
            if all(a is b for a, b in zip(items, value.items)):
                return value
            return Sequence(items)

        if isinstance(value, Mapping):
            entries = tuple((k, self.visit(v, depth + 1)) for k, v in value.entries)
            if all(a[1] is b[1] for a, b in zip(entries, value.entries)):
                return value
            return Mapping(entries, class_name=value.class_name)

        if isinstance(value, EncodedComposite):
            inner = codec.decode(value.raw, max_depth=self.max_depth - depth)
            rewritten = self.visit(inner, depth + 1)
            if rewritten is inner:
                return value
            return EncodedComposite(codec.encode(rewritten))

        raise TypeError(f"unsupported value type: {type(value).__name__}")


def rewrite(
    tree: Value,
    old_identifier: str,
    new_identifier: str,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Value:
    """Return *tree* with every *old_identifier* replaced by *new_identifier*.

    Parameters
    ----------
    tree:
        The value tree to rewrite.  It is never mutated.
    old_identifier:
        Literal text to replace.  Must not be empty.
    new_identifier:
        Replacement text.
    max_depth:
        Maximum nesting of containers and encoded composites.

    Raises
    ------
    MalformedEncoding
        If an encoded composite cannot be decoded or the tree nests deeper
        than *max_depth*.
    """
    if not old_identifier:
        raise ValueError("old_identifier must not be empty")
    return _Rewriter(old_identifier, new_identifier, max_depth).visit(tree, 0)


def rewrite_many(
    tree: Value,
    replacements: Iterable[tuple[str, str]],
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Value:
    """Apply ordered ``(old, new)`` *replacements* to *tree*.

    Longer, more specific identifiers (a domain containing the template
    identifier, say) should come first.
    """
    result = tree
    for old, new in replacements:
        result = rewrite(result, old, new, max_depth=max_depth)
    return result


def count_occurrences(tree: Value, identifier: str, *, max_depth: int = DEFAULT_MAX_DEPTH) -> int:
    """Count occurrences of *identifier* in every string of *tree*.

    Encoded composites are decoded and counted inside; mapping keys are not
    counted.
    """
    if not identifier:
        raise ValueError("identifier must not be empty")

    def _count(value: Value, depth: int) -> int:
        if depth > max_depth:
            raise MalformedEncoding(f"content nests deeper than {max_depth} levels")
        if isinstance(value, Scalar):
            return value.value.count(identifier) if isinstance(value.value, str) else 0
        if isinstance(value, Sequence):
            return sum(_count(item, depth + 1) for item in value.items)
        if isinstance(value, Mapping):
            return sum(_count(v, depth + 1) for _, v in value.entries)
        if isinstance(value, EncodedComposite):
            return _count(codec.decode(value.raw, max_depth=max_depth - depth), depth + 1)
        raise TypeError(f"unsupported value type: {type(value).__name__}")

    return _count(tree, 0)


# ---------------------------------------------------------------------------
# JSON bridge
# ---------------------------------------------------------------------------


def from_json(data: Any) -> Value:
    """Convert a stored JSON payload into a value tree.

    Strings shaped like an encoding become :class:`EncodedComposite`; a
    corrupt one is reported as :class:`MalformedEncoding` when it is
    rewritten, never silently treated as text.
    """
    if isinstance(data, dict):
        return Mapping(tuple((str(k), from_json(v)) for k, v in data.items()))
    if isinstance(data, (list, tuple)):
        return Sequence(tuple(from_json(item) for item in data))
    if isinstance(data, str):
        if codec.looks_encoded(data):
            return EncodedComposite(data)
        return Scalar(data)
    if data is None or isinstance(data, (bool, int, float)):
        return Scalar(data)
    raise TypeError(f"unsupported JSON type: {type(data).__name__}")


def to_json(value: Value) -> Any:
    """Convert a value tree back into a JSON-compatible payload."""
    if isinstance(value, Scalar):
        return value.value
    if isinstance(value, EncodedComposite):
        return value.raw
    if isinstance(value, Sequence):
        return [to_json(item) for item in value.items]
    if isinstance(value, Mapping):
        return {str(k): to_json(v) for k, v in value.entries}
    raise TypeError(f"unsupported value type: {type(value).__name__}")
